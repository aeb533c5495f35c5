import os
import tempfile
import threading
import unittest


class TestClaimRace(unittest.TestCase):
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

    def _call(self, op, **args):
        from chatroom.contracts.v1 import DaemonRequest
        from chatroom.daemon.server import handle_request

        resp, _ = handle_request(DaemonRequest.model_validate({"op": op, "args": args}))
        return resp

    def test_concurrent_claims_acknowledge_once(self) -> None:
        _, cleanup = self._with_home()
        try:
            resp = self._call("chatroom_create", team_roles=["builder", "reviewer"])
            self.assertTrue(resp.ok, resp.error)
            cid = resp.result["chatroom_id"]
            resp = self._call("task_create", chatroom_id=cid, content="only one")
            self.assertTrue(resp.ok, resp.error)

            results = []
            lock = threading.Lock()
            barrier = threading.Barrier(8)

            def claim() -> None:
                barrier.wait()
                r = self._call("task_claim", chatroom_id=cid, role="builder")
                with lock:
                    results.append(r)

            threads = [threading.Thread(target=claim) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            winners = [r for r in results if r.ok]
            losers = [r for r in results if not r.ok]
            self.assertEqual(len(winners), 1)
            self.assertEqual(len(losers), 7)
            self.assertTrue(all(r.error.code == "no_pending_task" for r in losers))

            counts = self._call("task_counts", chatroom_id=cid).result["counts"]
            self.assertEqual(counts["acknowledged"], 1)
            self.assertEqual(counts["pending"], 0)
        finally:
            cleanup()

    def test_failed_operation_writes_nothing(self) -> None:
        from chatroom.kernel.room import load_room
        from chatroom.kernel.store import load_room_state, room_transaction
        from chatroom.kernel import tasks
        from chatroom.kernel.settings import DEFAULT_RELIABILITY as cfg

        _, cleanup = self._with_home()
        try:
            cid = self._call("chatroom_create", team_roles=["builder"]).result["chatroom_id"]
            room = load_room(cid)
            assert room is not None
            with self.assertRaises(RuntimeError):
                with room_transaction(room) as st:
                    tasks.create_task(st, content="x", created_by="user", now_ms=1, cfg=cfg)
                    raise RuntimeError("boom")
            self.assertEqual(load_room_state(room).tasks, {})
        finally:
            cleanup()


if __name__ == "__main__":
    unittest.main()
