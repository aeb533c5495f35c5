import os
import tempfile
import unittest
from pathlib import Path


class TestReliabilitySettings(unittest.TestCase):
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

    def test_defaults_without_settings_file(self) -> None:
        from chatroom.kernel.settings import DEFAULT_RELIABILITY, load_reliability_config

        _, cleanup = self._with_home()
        try:
            cfg = load_reliability_config()
            self.assertEqual(cfg, DEFAULT_RELIABILITY)
            self.assertEqual(cfg.heartbeat_ttl_ms, 90_000)
            self.assertEqual(cfg.active_ttl_ms, 3_600_000)
            self.assertEqual(cfg.task_pending_timeout_ms, 300_000)
            self.assertEqual(cfg.task_acknowledged_timeout_ms, 120_000)
            self.assertEqual(cfg.daemon_heartbeat_ttl_ms, 120_000)
        finally:
            cleanup()

    def test_yaml_overrides_are_applied_per_key(self) -> None:
        from chatroom.kernel.settings import load_reliability_config, save_settings

        _, cleanup = self._with_home()
        try:
            save_settings(
                {
                    "default_agent_model": "opus-large",
                    "max_active_tasks": 5,
                    "reliability": {"task_pending_timeout_ms": 1000, "heartbeat_ttl_ms": "120000"},
                }
            )
            cfg = load_reliability_config()
            self.assertEqual(cfg.default_agent_model, "opus-large")
            self.assertEqual(cfg.max_active_tasks, 5)
            self.assertEqual(cfg.task_pending_timeout_ms, 1000)
            self.assertEqual(cfg.heartbeat_ttl_ms, 120_000)
            self.assertEqual(cfg.task_acknowledged_timeout_ms, 120_000)
        finally:
            cleanup()

    def test_ttl_shorter_than_two_intervals_falls_back(self) -> None:
        from chatroom.kernel.settings import DEFAULT_RELIABILITY, reliability_from_doc

        with self.assertLogs("chatroom.settings", level="WARNING"):
            cfg = reliability_from_doc({"reliability": {"heartbeat_interval_ms": 30000, "heartbeat_ttl_ms": 45000}})
        self.assertEqual(cfg.heartbeat_ttl_ms, DEFAULT_RELIABILITY.heartbeat_ttl_ms)
        self.assertEqual(cfg.heartbeat_interval_ms, DEFAULT_RELIABILITY.heartbeat_interval_ms)

        with self.assertLogs("chatroom.settings", level="WARNING"):
            cfg = reliability_from_doc(
                {"reliability": {"daemon_heartbeat_interval_ms": 30000, "daemon_heartbeat_ttl_ms": 60000}}
            )
        self.assertEqual(cfg.daemon_heartbeat_ttl_ms, DEFAULT_RELIABILITY.daemon_heartbeat_ttl_ms)

    def test_invalid_yaml_uses_defaults(self) -> None:
        from chatroom.kernel.settings import DEFAULT_RELIABILITY, load_reliability_config

        td, cleanup = self._with_home()
        try:
            Path(td, "settings.yaml").write_text("reliability: [unclosed\n", encoding="utf-8")
            with self.assertLogs("chatroom.settings", level="WARNING"):
                cfg = load_reliability_config()
            self.assertEqual(cfg, DEFAULT_RELIABILITY)
        finally:
            cleanup()


if __name__ == "__main__":
    unittest.main()
