"""Tests for configuration loading and validation."""

from __future__ import annotations

import tempfile
from pathlib import Path
import unittest

from redlib_wrapper.config import DEFAULT_CONFIG, BusConfig, UpdateConfig, load_config
from redlib_wrapper.events import EventBus


class ConfigTests(unittest.TestCase):
    """Validate config merge and fallback behavior."""

    def test_missing_config_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config = load_config(config_path=config_path)
            self.assertEqual(config, DEFAULT_CONFIG)
            self.assertEqual(config["update"]["artifact_name"], "redlib")
            self.assertEqual(config["update"]["sanity_mode"], "auto")
            self.assertEqual(config["bus"]["buffer_size"], 64)
            self.assertEqual(config["logging"]["level"], "INFO")

    def test_partial_config_overrides_selected_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                """
[update]
artifact_name = "redlib-musl"
probe_args = ["-V"]

[bus]
buffer_size = 8

[logging]
level = "debug"
                """.strip(),
                encoding="utf-8",
            )
            config = load_config(config_path=config_path)
            self.assertEqual(config["update"]["artifact_name"], "redlib-musl")
            self.assertEqual(config["update"]["probe_args"], ["-V"])
            self.assertEqual(config["bus"]["buffer_size"], 8)
            self.assertEqual(config["logging"]["level"], "DEBUG")
            self.assertEqual(
                config["update"]["current_root"],
                DEFAULT_CONFIG["update"]["current_root"],
            )
            self.assertEqual(
                config["run"]["stderr_sample_lines"],
                DEFAULT_CONFIG["run"]["stderr_sample_lines"],
            )

    def test_invalid_values_fallback_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                """
[update]
artifact_name = "../escape"
version_pattern = "version ("

[bus]
buffer_size = 0
                """.strip(),
                encoding="utf-8",
            )
            config = load_config(config_path=config_path)
            self.assertEqual(config, DEFAULT_CONFIG)

    def test_unparsable_toml_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text("[update\nartifact_name = ", encoding="utf-8")
            config = load_config(config_path=config_path)
            self.assertEqual(config, DEFAULT_CONFIG)

    def test_config_file_permissions_are_tightened(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text("[bus]\nbuffer_size = 4\n", encoding="utf-8")
            config_path.chmod(0o644)
            load_config(config_path=config_path)
            self.assertEqual(config_path.stat().st_mode & 0o777, 0o600)

    def test_version_pattern_requires_a_group(self) -> None:
        with self.assertRaises(ValueError):
            UpdateConfig(version_pattern=r"version \d+")

    def test_current_path_joins_root_and_artifact_name(self) -> None:
        config = UpdateConfig(current_root="/opt/redlib", artifact_name="redlib")
        self.assertEqual(str(config.current_path), "/opt/redlib/redlib")

    def test_publish_timeout_defaults_to_thirty_seconds(self) -> None:
        self.assertEqual(BusConfig().publish_timeout, 30.0)
        self.assertEqual(BusConfig(publish_timeout_seconds=2.5).publish_timeout, 2.5)
        self.assertEqual(EventBus().publish_timeout, 30.0)

    def test_publish_timeout_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            BusConfig(publish_timeout_seconds=0)


if __name__ == "__main__":
    unittest.main()
