import os
import tempfile
import unittest


class TestParticipants(unittest.TestCase):
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

    def _state(self, roles=("planner", "builder", "reviewer")):
        from chatroom.kernel.registry import load_registry
        from chatroom.kernel.room import create_room
        from chatroom.kernel.store import load_room_state

        return load_room_state(create_room(load_registry(), team_roles=list(roles)))

    def test_join_sets_waiting_deadline(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            res = participants.join(st, "builder", connection_id="c1", now_ms=1_000, cfg=cfg)
            p = participants.get_by_role(st, "builder")
            self.assertIsNotNone(p)
            self.assertEqual(p.status, "waiting")
            self.assertEqual(p.ready_until, 1_000 + cfg.heartbeat_ttl_ms)
            self.assertIsNone(p.active_until)
            self.assertEqual(res["recovered_task_ids"], [])
            self.assertEqual(st.messages[-1].type, "join")
        finally:
            cleanup()

    def test_unknown_role_rejected(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.errors import InvalidRole
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            with self.assertRaises(InvalidRole):
                participants.join(st, "janitor", connection_id="c1", now_ms=1, cfg=cfg)
        finally:
            cleanup()

    def test_heartbeat_from_superseded_connection_is_ignored(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            participants.join(st, "builder", connection_id="old", now_ms=1_000, cfg=cfg)
            participants.join(st, "builder", connection_id="new", now_ms=2_000, cfg=cfg)
            before = participants.get_by_role(st, "builder").ready_until

            applied, reason = participants.heartbeat(st, "builder", connection_id="old", now_ms=50_000, cfg=cfg)
            self.assertFalse(applied)
            self.assertEqual(reason, "connection_mismatch")
            self.assertEqual(participants.get_by_role(st, "builder").ready_until, before)

            applied, _ = participants.heartbeat(st, "builder", connection_id="new", now_ms=50_000, cfg=cfg)
            self.assertTrue(applied)
            self.assertEqual(participants.get_by_role(st, "builder").ready_until, 50_000 + cfg.heartbeat_ttl_ms)

            applied, reason = participants.heartbeat(st, "reviewer", connection_id="x", now_ms=50_000, cfg=cfg)
            self.assertFalse(applied)
            self.assertEqual(reason, "participant_not_found")
        finally:
            cleanup()

    def test_rejoin_without_connection_drops_the_old_one(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            participants.join(st, "builder", connection_id="old", now_ms=1_000, cfg=cfg)
            participants.join(st, "builder", connection_id=None, now_ms=2_000, cfg=cfg)
            self.assertIsNone(participants.get_by_role(st, "builder").connection_id)

            applied, reason = participants.heartbeat(st, "builder", connection_id="old", now_ms=3_000, cfg=cfg)
            self.assertFalse(applied)
            self.assertEqual(reason, "connection_mismatch")
            applied, _ = participants.heartbeat(st, "builder", connection_id=None, now_ms=3_000, cfg=cfg)
            self.assertTrue(applied)
        finally:
            cleanup()

    def test_active_heartbeat_never_shortens_deadline(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            participants.join(st, "builder", connection_id="c", now_ms=0, cfg=cfg)
            participants.update_status(st, "builder", "active", now_ms=0, cfg=cfg)
            p = participants.get_by_role(st, "builder")
            self.assertEqual(p.active_until, cfg.active_ttl_ms)
            self.assertIsNone(p.ready_until)

            participants.heartbeat(st, "builder", connection_id="c", now_ms=10_000, cfg=cfg)
            self.assertEqual(p.active_until, cfg.active_ttl_ms)

            late = cfg.active_ttl_ms - 1
            participants.heartbeat(st, "builder", connection_id="c", now_ms=late, cfg=cfg)
            self.assertEqual(p.active_until, late + cfg.heartbeat_ttl_ms)
        finally:
            cleanup()

    def test_update_status_waiting_and_missing(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.errors import ParticipantNotFound
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            with self.assertRaises(ParticipantNotFound):
                participants.update_status(st, "builder", "waiting", now_ms=0, cfg=cfg)
            participants.join(st, "builder", connection_id="c", now_ms=0, cfg=cfg)
            participants.update_status(st, "builder", "active", now_ms=0, cfg=cfg)
            p = participants.update_status(st, "builder", "waiting", now_ms=5, cfg=cfg, expires_at=99)
            self.assertEqual(p.ready_until, 99)
            self.assertIsNone(p.active_until)
            with self.assertRaises(ValueError):
                participants.update_status(st, "builder", "sleeping", now_ms=5, cfg=cfg)
        finally:
            cleanup()

    def test_ghost_is_not_reachable(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            participants.join(st, "builder", connection_id="c", now_ms=0, cfg=cfg)
            p = participants.get_by_role(st, "builder")
            self.assertFalse(p.is_ghost(cfg.heartbeat_ttl_ms))
            self.assertTrue(p.is_ghost(cfg.heartbeat_ttl_ms + 1))
            self.assertTrue(participants.is_reachable(st, "builder", now_ms=10, cfg=cfg))
            self.assertFalse(participants.is_reachable(st, "builder", now_ms=cfg.heartbeat_ttl_ms + 1, cfg=cfg))
            self.assertFalse(participants.is_reachable(st, "reviewer", now_ms=10, cfg=cfg))
        finally:
            cleanup()

    def test_ghost_blocks_readiness_but_absence_does_not(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            self.assertTrue(participants.all_roles_ready(st, now_ms=0, cfg=cfg))
            participants.join(st, "builder", connection_id="c", now_ms=0, cfg=cfg)
            self.assertTrue(participants.all_roles_ready(st, now_ms=1, cfg=cfg))
            self.assertFalse(participants.all_roles_ready(st, now_ms=cfg.heartbeat_ttl_ms + 1, cfg=cfg))
        finally:
            cleanup()

    def test_remote_role_with_stale_daemon_is_unreachable(self) -> None:
        from chatroom.kernel import machines, participants
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg
        from chatroom.kernel.store import FleetState

        _, cleanup = self._with_home()
        try:
            st = self._state()
            fleet = FleetState()
            machines.register_machine(fleet, "m1", now_ms=0, available_harnesses=["claude"])
            machines.save_team_agent_config(fleet, st.chatroom_id, "builder", now_ms=0, machine_id="m1")
            participants.join(st, "builder", connection_id="c", now_ms=0, cfg=cfg)

            self.assertTrue(participants.is_reachable(st, "builder", now_ms=1, cfg=cfg, fleet=fleet))
            machines.update_daemon_status(fleet, "m1", connected=False, now_ms=2)
            self.assertFalse(participants.is_reachable(st, "builder", now_ms=3, cfg=cfg, fleet=fleet))
        finally:
            cleanup()

    def test_rejoin_while_active_recovers_tasks(self) -> None:
        from chatroom.kernel import participants, tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            participants.join(st, "builder", connection_id="c1", now_ms=0, cfg=cfg)
            t = tasks.create_task(st, content="x", created_by="planner", now_ms=1, cfg=cfg, target_role="builder")
            tasks.claim_task(st, "builder", now_ms=2)
            tasks.start_task(st, "builder", now_ms=3, cfg=cfg)
            self.assertEqual(participants.get_by_role(st, "builder").status, "active")

            res = participants.join(st, "builder", connection_id="c2", now_ms=4, cfg=cfg)
            self.assertEqual(res["recovered_task_ids"], [t.id])
            self.assertEqual(t.status, "pending")
            self.assertIsNone(t.assigned_to)
            p = participants.get_by_role(st, "builder")
            self.assertEqual(p.status, "waiting")
            self.assertEqual(p.connection_id, "c2")
        finally:
            cleanup()

    def test_entry_join_promotes_queued_only_when_ready(self) -> None:
        from chatroom.kernel import participants, tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            first = tasks.create_task(st, content="1", created_by="user", now_ms=1, cfg=cfg)
            second = tasks.create_task(st, content="2", created_by="user", now_ms=2, cfg=cfg)
            tasks.cancel_task(st, first.id, now_ms=3, promote=False)
            self.assertEqual(second.status, "queued")

            # A ghost reviewer blocks promotion.
            participants.join(st, "reviewer", connection_id="r", now_ms=0, cfg=cfg)
            late = cfg.heartbeat_ttl_ms + 10
            res = participants.join(st, "planner", connection_id="p", now_ms=late, cfg=cfg)
            self.assertIsNone(res["promoted_task_id"])
            self.assertEqual(second.status, "queued")

            participants.join(st, "reviewer", connection_id="r2", now_ms=late, cfg=cfg)
            res = participants.join(st, "planner", connection_id="p", now_ms=late + 1, cfg=cfg)
            self.assertEqual(res["promoted_task_id"], second.id)
            self.assertEqual(second.status, "pending")
        finally:
            cleanup()

    def test_leave(self) -> None:
        from chatroom.kernel import participants
        from chatroom.kernel.errors import ParticipantNotFound
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            st = self._state()
            participants.join(st, "builder", connection_id="c", now_ms=0, cfg=cfg)
            participants.leave(st, "builder")
            self.assertIsNone(participants.get_by_role(st, "builder"))
            with self.assertRaises(ParticipantNotFound):
                participants.leave(st, "builder")
        finally:
            cleanup()


if __name__ == "__main__":
    unittest.main()
