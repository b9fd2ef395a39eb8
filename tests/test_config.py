import json
import pathlib
import sys
import tempfile
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fleetwatch.config import AppConfig, load_config, save_config


class ConfigTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = pathlib.Path(self._tmp.name) / "nested" / "config.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_file_writes_defaults(self):
        cfg = load_config(self.path)
        self.assertEqual(cfg, AppConfig())
        self.assertTrue(self.path.exists())
        self.assertEqual(json.loads(self.path.read_text())["stuck_threshold_seconds"], 120.0)

    def test_defaults(self):
        cfg = AppConfig()
        self.assertEqual(cfg.health_check_interval_seconds, 30.0)
        self.assertEqual(cfg.idle_threshold_seconds, 300.0)
        self.assertEqual(cfg.rate_limit_cooldown_seconds, 30.0)
        self.assertEqual(cfg.proactive_threshold_pct, 90.0)
        self.assertEqual(cfg.switch_cooldown_seconds, 300.0)
        self.assertEqual(cfg.providers, ["claude", "openai", "gemini"])

    def test_round_trip_and_unknown_keys(self):
        save_config(AppConfig(session="proj", auto_rotate=False), self.path)
        data = json.loads(self.path.read_text())
        data["retired_option"] = 1
        self.path.write_text(json.dumps(data))

        cfg = load_config(self.path)
        self.assertEqual(cfg.session, "proj")
        self.assertFalse(cfg.auto_rotate)

    def test_corrupt_file_restores_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json")
        with self.assertLogs("fleetwatch.config", level="WARNING"):
            cfg = load_config(self.path)
        self.assertEqual(cfg, AppConfig())
        self.assertEqual(json.loads(self.path.read_text())["session"], "")


if __name__ == "__main__":
    unittest.main()
