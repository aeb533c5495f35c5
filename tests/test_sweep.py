import os
import tempfile
import unittest


class TestSweep(unittest.TestCase):
    def _with_home(self):
        old_home = os.environ.get("CHATROOM_HOME")
        td_ctx = tempfile.TemporaryDirectory()
        td = td_ctx.__enter__()
        os.environ["CHATROOM_HOME"] = td

        def cleanup() -> None:
            td_ctx.__exit__(None, None, None)
            if old_home is None:
                os.environ.pop("CHATROOM_HOME", None)
            else:
                os.environ["CHATROOM_HOME"] = old_home

        return td, cleanup

    def _room(self, roles=("builder", "reviewer")):
        from chatroom.kernel.registry import load_registry
        from chatroom.kernel.room import create_room

        return create_room(load_registry(), team_roles=list(roles))

    def test_fresh_state_is_a_no_op(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            self._room()
            summary = SweepManager().tick(now_ms=1_000, cfg=cfg)
            self.assertFalse(summary.changed)
            self.assertEqual(summary.failed_chatrooms, [])
        finally:
            cleanup()

    def test_stalled_queue_promoted_once_role_is_idle(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel import tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import load_room_state, room_transaction

        _, cleanup = self._with_home()
        try:
            room = self._room(("builder",))
            with room_transaction(room) as st:
                a = tasks.create_task(st, content="a", created_by="user", now_ms=0, cfg=cfg)
                b = tasks.create_task(st, content="b", created_by="user", now_ms=1, cfg=cfg)
                tasks.claim_task(st, "builder", now_ms=2)
                # Role freed without promotion, as when readiness was not met at cancel time.
                tasks.cancel_task(st, a.id, now_ms=3, promote=False)
                b_id = b.id
            self.assertEqual(load_room_state(room).tasks[b_id].status, "queued")

            summary = SweepManager().tick(now_ms=10, cfg=cfg)
            self.assertEqual(summary.tasks_promoted, [b_id])
            self.assertTrue(summary.changed)
            self.assertEqual(load_room_state(room).tasks[b_id].status, "pending")

            again = SweepManager().tick(now_ms=11, cfg=cfg)
            self.assertEqual(again.tasks_promoted, [])
        finally:
            cleanup()

    def test_ghost_removed_and_its_work_recovered(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel import participants, tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import load_room_state, room_transaction

        _, cleanup = self._with_home()
        try:
            room = self._room()
            with room_transaction(room) as st:
                participants.join(st, "builder", connection_id="c", now_ms=0, cfg=cfg)
                participants.join(st, "reviewer", connection_id="r", now_ms=0, cfg=cfg)
                t = tasks.create_task(st, content="x", created_by="user", now_ms=0, cfg=cfg)
                tasks.claim_task(st, "builder", now_ms=1)
                tasks.start_task(st, "builder", now_ms=2, cfg=cfg)
                task_id = t.id

            # Reviewer (waiting) is a ghost after the heartbeat TTL; builder is active for an hour.
            now = cfg.heartbeat_ttl_ms + 10
            summary = SweepManager().tick(now_ms=now, cfg=cfg)
            self.assertEqual([p["role"] for p in summary.participants_removed], ["reviewer"])
            st = load_room_state(room)
            self.assertIsNone(st.participant("reviewer"))
            self.assertEqual(st.tasks[task_id].status, "in_progress")

            now = 2 + cfg.active_ttl_ms + 10
            summary = SweepManager().tick(now_ms=now, cfg=cfg)
            self.assertEqual([p["role"] for p in summary.participants_removed], ["builder"])
            self.assertIn(task_id, summary.tasks_recovered)
            st = load_room_state(room)
            self.assertEqual(st.participants, {})
            self.assertEqual(st.tasks[task_id].status, "pending")
            self.assertIsNone(st.tasks[task_id].assigned_to)

            again = SweepManager().tick(now_ms=now + 1, cfg=cfg)
            self.assertEqual(again.participants_removed, [])
            self.assertEqual(again.tasks_recovered, [])
        finally:
            cleanup()

    def test_stuck_acknowledged_task_goes_back_to_pending(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel import tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import load_room_state, room_transaction

        _, cleanup = self._with_home()
        try:
            room = self._room()
            with room_transaction(room) as st:
                t = tasks.create_task(st, content="x", created_by="user", now_ms=0, cfg=cfg)
                tasks.claim_task(st, "builder", now_ms=0)
                task_id = t.id

            # Not yet past the acknowledgement timeout.
            SweepManager().tick(now_ms=cfg.task_acknowledged_timeout_ms, cfg=cfg)
            self.assertEqual(load_room_state(room).tasks[task_id].status, "acknowledged")

            summary = SweepManager().tick(now_ms=cfg.task_acknowledged_timeout_ms + 1, cfg=cfg)
            self.assertEqual(summary.tasks_recovered, [task_id])
            t = load_room_state(room).tasks[task_id]
            self.assertEqual(t.status, "pending")
            self.assertIsNone(t.assigned_to)
            self.assertIsNone(t.acknowledged_at)

            # The late agent now fails to start and must re-claim.
            from chatroom.kernel.errors import NoAcknowledgedTask

            with self.assertRaises(NoAcknowledgedTask):
                with room_transaction(room) as st:
                    tasks.start_task(st, "builder", now_ms=cfg.task_acknowledged_timeout_ms + 2, cfg=cfg)
        finally:
            cleanup()

    def test_acknowledged_task_with_live_assignee_is_kept(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel import participants, tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import load_room_state, room_transaction

        _, cleanup = self._with_home()
        try:
            room = self._room()
            with room_transaction(room) as st:
                participants.join(st, "builder", connection_id="c", now_ms=0, ready_until=10_000_000, cfg=cfg)
                t = tasks.create_task(st, content="x", created_by="user", now_ms=0, cfg=cfg)
                tasks.claim_task(st, "builder", now_ms=0)
                task_id = t.id
            SweepManager().tick(now_ms=cfg.task_acknowledged_timeout_ms * 2, cfg=cfg)
            self.assertEqual(load_room_state(room).tasks[task_id].status, "acknowledged")
        finally:
            cleanup()

    def test_stale_pending_task_restarts_remote_agent(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel import machines, tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import fleet_transaction, load_fleet_state, room_transaction

        _, cleanup = self._with_home()
        try:
            room = self._room()
            t0 = 1_000_000
            with room_transaction(room) as st:
                tasks.create_task(st, content="x", created_by="user", now_ms=t0, cfg=cfg)
            now = t0 + cfg.task_pending_timeout_ms + 1
            with fleet_transaction() as fleet:
                machines.register_machine(fleet, "m1", now_ms=now, available_harnesses=["claude"])
                machines.save_team_agent_config(
                    fleet, room.chatroom_id, "builder", now_ms=now, machine_id="m1", agent_harness="claude"
                )

            summary = SweepManager().tick(now_ms=now, cfg=cfg)
            self.assertEqual(len(summary.restarts_requested), 1)
            types = [c.type for c in machines.get_pending_commands(load_fleet_state(), "m1")]
            self.assertEqual(types, ["stop-agent", "start-agent"])

            # Overlapping/repeated passes do not stack more restarts.
            SweepManager().tick(now_ms=now + 1, cfg=cfg)
            SweepManager().tick(now_ms=now + 2, cfg=cfg)
            self.assertEqual(len(machines.get_pending_commands(load_fleet_state(), "m1")), 2)
        finally:
            cleanup()

    def test_custom_agent_only_warns(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel import machines, tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import fleet_transaction, load_fleet_state, room_transaction

        _, cleanup = self._with_home()
        try:
            room = self._room()
            with room_transaction(room) as st:
                tasks.create_task(st, content="x", created_by="user", now_ms=0, cfg=cfg)
            now = cfg.task_pending_timeout_ms + 1
            with fleet_transaction() as fleet:
                machines.register_machine(fleet, "m1", now_ms=now, available_harnesses=["claude"])
                machines.save_team_agent_config(fleet, room.chatroom_id, "builder", now_ms=now, type="custom", machine_id="m1")

            with self.assertLogs("chatroom.sweep", level="WARNING"):
                summary = SweepManager().tick(now_ms=now, cfg=cfg)
            self.assertEqual(summary.restarts_requested, [])
            self.assertEqual(len(summary.warnings), 1)
            self.assertEqual(machines.get_pending_commands(load_fleet_state(), "m1"), [])
        finally:
            cleanup()

    def test_stale_daemons_marked_before_rooms(self) -> None:
        from chatroom.daemon.sweep import SweepManager
        from chatroom.kernel import machines, tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import fleet_transaction, load_fleet_state, room_transaction

        _, cleanup = self._with_home()
        try:
            room = self._room()
            with room_transaction(room) as st:
                tasks.create_task(st, content="x", created_by="user", now_ms=0, cfg=cfg)
            with fleet_transaction() as fleet:
                machines.register_machine(fleet, "m1", now_ms=0, available_harnesses=["claude"])
                machines.save_team_agent_config(
                    fleet, room.chatroom_id, "builder", now_ms=0, machine_id="m1", agent_harness="claude"
                )

            now = max(cfg.daemon_heartbeat_ttl_ms, cfg.task_pending_timeout_ms) + 1
            summary = SweepManager().tick(now_ms=now, cfg=cfg)
            self.assertEqual(summary.machines_marked_stale, ["m1"])
            self.assertEqual(summary.restarts_requested, [])
            fleet = load_fleet_state()
            self.assertFalse(fleet.machines["m1"].daemon_connected)
            self.assertEqual(machines.get_pending_commands(fleet, "m1"), [])
        finally:
            cleanup()


if __name__ == "__main__":
    unittest.main()
