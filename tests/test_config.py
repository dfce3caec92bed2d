"""Tests for configuration loading."""

import yaml

from peelog.core.config import Config


class TestConfigLoad:
    def test_defaults_without_file(self, tmp_path):
        config = Config.load(tmp_path / "missing.yaml")

        assert config.log_level == "INFO"
        assert config.sync.cooldown_seconds == 20.0
        assert config.analytics.freshness_minutes == 10
        assert config.analytics.min_active_days == 3
        assert config.notifications.toast_interval_seconds == 3.0
        assert config.ai.daily_question_limit == 1

    def test_yaml_overrides_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"sync": {"cooldown_seconds": 5}, "timezone": "Europe/Berlin"}))

        config = Config.load(path)

        assert config.sync.cooldown_seconds == 5
        assert config.sync.upload_batch_size == 200
        assert config.tz.key == "Europe/Berlin"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"log_level": "WARNING"}))
        monkeypatch.setenv("PEELOG_LOG_LEVEL", "DEBUG")

        config = Config.load(path)

        assert config.log_level == "DEBUG"

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "out" / "config.yaml"
        config = Config(data_dir=tmp_path / "data", timezone="UTC")
        config.sync.cooldown_seconds = 7

        config.save(path)
        loaded = Config.load(path)

        assert loaded.sync.cooldown_seconds == 7
        assert loaded.data_dir == tmp_path / "data"
        assert loaded.db_path == tmp_path / "data" / "peelog.db"
