from __future__ import annotations

import unittest
from pathlib import Path

from captable_io.config import DEFAULT_BATCH_SIZE, EngineConfig
from captable_io.errors import ConfigError


class EngineConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = EngineConfig.from_env({})
        self.assertEqual(config.batch_size, DEFAULT_BATCH_SIZE)
        self.assertEqual(config.batch_size, 100)
        self.assertIsNone(config.rest_url)
        self.assertIsNone(config.data_dir)

    def test_reads_prefixed_environment(self):
        config = EngineConfig.from_env({
            "CAPTABLE_IO_BATCH_SIZE": "25",
            "CAPTABLE_IO_DATA_DIR": "/tmp/captable",
            "CAPTABLE_IO_REST_URL": "https://db.example.com",
            "CAPTABLE_IO_REST_API_KEY": "secret",
            "CAPTABLE_IO_REQUEST_TIMEOUT": "2.5",
            "BATCH_SIZE": "1",
        })
        self.assertEqual(config.batch_size, 25)
        self.assertEqual(config.data_dir, Path("/tmp/captable"))
        self.assertEqual(config.rest_url, "https://db.example.com")
        self.assertEqual(config.request_timeout, 2.5)

    def test_blank_values_fall_back_to_defaults(self):
        config = EngineConfig.from_env({"CAPTABLE_IO_BATCH_SIZE": "  ", "CAPTABLE_IO_DATA_DIR": ""})
        self.assertEqual(config.batch_size, 100)
        self.assertIsNone(config.data_dir)

    def test_invalid_values_raise_config_error(self):
        with self.assertRaises(ConfigError):
            EngineConfig.from_env({"CAPTABLE_IO_BATCH_SIZE": "lots"})
        with self.assertRaises(ConfigError):
            EngineConfig.from_env({"CAPTABLE_IO_BATCH_SIZE": "0"})
        with self.assertRaises(ConfigError):
            EngineConfig.from_env({"CAPTABLE_IO_REQUEST_TIMEOUT": "soon"})
        with self.assertRaisesRegex(ConfigError, "REST_API_KEY"):
            EngineConfig.from_env({"CAPTABLE_IO_REST_URL": "https://db.example.com"})

    def test_overrides_ignore_none(self):
        config = EngineConfig(batch_size=50).with_overrides(batch_size=None, data_dir=Path("out"))
        self.assertEqual(config.batch_size, 50)
        self.assertEqual(config.data_dir, Path("out"))
        with self.assertRaises(ConfigError):
            config.with_overrides(batch_size=0)


if __name__ == "__main__":
    unittest.main()
