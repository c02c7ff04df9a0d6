# test_config.py
"""
Tests for config: database path and engine settings from config.json and
environment variables.
Run with: python -m pytest test_config.py -v
"""

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import config
from domain.errors import ValidationError

_ENV_NAMES = [config.DB_PATH_ENV] + [env for env, _ in config._SETTING_ENV.values()]


def clean_env():
    return {k: v for k, v in os.environ.items() if k not in _ENV_NAMES}


class ConfigCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.base = Path(self.tmpdir.name)
        patcher = mock.patch.dict(os.environ, clean_env(), clear=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmpdir.cleanup()

    def write_config(self, data):
        (self.base / config.CONFIG_FILE_NAME).write_text(json.dumps(data), encoding="utf-8")


class TestLoadDbPath(ConfigCase):
    def test_env_wins(self):
        self.write_config({"db_path": "from_file.db"})
        os.environ[config.DB_PATH_ENV] = "  /data/env.db "
        self.assertEqual(config.load_db_path(self.base), Path("/data/env.db"))

    def test_relative_path_resolved_against_config_dir(self):
        self.write_config({"db_path": "data/cal.db"})
        self.assertEqual(config.load_db_path(self.base), (self.base / "data" / "cal.db").resolve())

    def test_default_under_user_data_dir(self):
        self.assertEqual(config.load_db_path(self.base), config.get_user_data_dir() / "calibration.db")

    def test_unreadable_file_ignored(self):
        (self.base / config.CONFIG_FILE_NAME).write_text("{broken", encoding="utf-8")
        self.assertEqual(config.load_db_path(self.base), config.get_user_data_dir() / "calibration.db")


class TestLoadEngineSettings(ConfigCase):
    def test_defaults(self):
        self.assertEqual(config.load_engine_settings(self.base), config.DEFAULT_SETTINGS)
        self.assertEqual(config.DEFAULT_SETTINGS.month_overflow, "clamp")
        self.assertEqual(config.DEFAULT_SETTINGS.due_soon_days, 30)

    def test_file_then_env(self):
        self.write_config({"lifecycle": {"month_overflow": "rollover", "due_soon_days": 14}})
        settings = config.load_engine_settings(self.base)
        self.assertEqual(settings.month_overflow, "rollover")
        self.assertEqual(settings.due_soon_days, 14)

        os.environ["CAL_LIFECYCLE_DUE_SOON_DAYS"] = "7"
        self.assertEqual(config.load_engine_settings(self.base).due_soon_days, 7)

    def test_bad_values(self):
        self.write_config({"lifecycle": {"month_overflow": "sideways"}})
        with self.assertRaises(ValidationError):
            config.load_engine_settings(self.base)

        self.write_config({"lifecycle": {"due_soon_days": "soon"}})
        with self.assertRaises(ValidationError):
            config.load_engine_settings(self.base)

        self.write_config({"lifecycle": []})
        with self.assertRaises(ValidationError):
            config.load_engine_settings(self.base)


if __name__ == "__main__":
    unittest.main()
