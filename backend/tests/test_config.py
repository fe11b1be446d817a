"""
Tests for engine configuration.
"""
from mrp.config import MRPConfig, get_config, reset_config


class TestMRPConfig:
    """Defaults and MRP_* environment overrides."""

    def test_defaults(self):
        config = MRPConfig()
        assert config.respect_lead_times is True
        assert config.include_safety_stock is True
        assert config.max_workers == 1
        assert config.working_weekdays == (0, 1, 2, 3, 4)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MRP_RESPECT_LEAD_TIMES", "false")
        monkeypatch.setenv("MRP_MAX_WORKERS", "4")
        monkeypatch.setenv("MRP_LOCK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("MRP_WORKING_WEEKDAYS", "0,1,2,3,4,5")
        monkeypatch.setenv("MRP_DATABASE_URL", "sqlite://")
        monkeypatch.setenv("MRP_INCREMENTAL_MAX_DIRTY_RATIO", "0.5")

        config = MRPConfig.from_env()

        assert config.respect_lead_times is False
        assert config.max_workers == 4
        assert config.lock_timeout_seconds == 2.5
        assert config.working_weekdays == (0, 1, 2, 3, 4, 5)
        assert config.database_url == "sqlite://"
        assert config.incremental_max_dirty_ratio == 0.5

    def test_invalid_values_keep_defaults(self, monkeypatch):
        monkeypatch.setenv("MRP_MAX_WORKERS", "many")
        monkeypatch.setenv("MRP_WORKING_WEEKDAYS", "0,9")
        config = MRPConfig.from_env()
        assert config.max_workers == 1
        assert config.working_weekdays == (0, 1, 2, 3, 4)

    def test_singleton(self, monkeypatch):
        monkeypatch.setenv("MRP_PROGRESS_EVERY", "3")
        first = get_config()
        assert first is get_config()
        assert first.progress_every == 3
        reset_config()
        assert get_config() is not first

    def test_to_dict(self):
        data = MRPConfig().to_dict()
        assert data["working_weekdays"] == [0, 1, 2, 3, 4]
        assert "database_url" in data
