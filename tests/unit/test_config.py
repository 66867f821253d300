"""Test settings defaults, TOML loading, env overrides and store validation."""

import pytest

from swapmarket.core.config import Settings, load_settings
from swapmarket.core.enums import StoreBackend
from swapmarket.core.errors import ConfigError


class TestDefaults:
    def test_memory_backend_by_default(self):
        settings = Settings()
        assert settings.store.backend == StoreBackend.MEMORY
        assert settings.store.timeout_seconds == 5.0
        assert settings.swaps.orphan_grace_seconds == 60.0

    def test_observability_defaults(self):
        settings = Settings()
        assert settings.observability.log_level == "INFO"
        assert settings.observability.log_format == "json"
        assert settings.observability.metrics_port == 0


class TestLoadSettings:
    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.toml")
        assert settings.store.backend == StoreBackend.MEMORY

    def test_toml_file(self, tmp_path):
        path = tmp_path / "swap.toml"
        path.write_text(
            '[store]\nbackend = "redis"\nredis_url = "redis://cache:6379/2"\n'
            "[swaps]\norphan_grace_seconds = 5\n"
        )
        settings = load_settings(path)
        assert settings.store.backend == StoreBackend.REDIS
        assert settings.store.redis_url == "redis://cache:6379/2"
        assert settings.swaps.orphan_grace_seconds == 5.0

    def test_overrides_merge_into_sections(self, tmp_path):
        path = tmp_path / "swap.toml"
        path.write_text('[store]\nbackend = "sql"\npool_size = 3\n')
        settings = load_settings(path, overrides={"store": {"pool_size": 9}})
        assert settings.store.backend == StoreBackend.SQL
        assert settings.store.pool_size == 9

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SWAPMARKET_STORE__BACKEND", "redis")
        monkeypatch.setenv("SWAPMARKET_OBSERVABILITY__LOG_LEVEL", "DEBUG")
        settings = load_settings()
        assert settings.store.backend == StoreBackend.REDIS
        assert settings.observability.log_level == "DEBUG"


class TestValidateStore:
    def test_defaults_are_valid(self):
        Settings().validate_store()

    def test_non_positive_timeout(self):
        settings = Settings(store={"timeout_seconds": 0})
        with pytest.raises(ConfigError, match="timeout"):
            settings.validate_store()

    def test_sql_url_requires_async_driver(self):
        settings = Settings(store={"backend": "sql", "url": "postgresql://localhost/db"})
        with pytest.raises(ConfigError, match="async driver"):
            settings.validate_store()

    def test_sqlite_async_url_accepted(self):
        settings = Settings(store={"backend": "sql", "url": "sqlite+aiosqlite:///x.db"})
        settings.validate_store()

    def test_bad_redis_scheme(self):
        settings = Settings(store={"backend": "redis", "redis_url": "http://localhost"})
        with pytest.raises(ConfigError, match="Redis"):
            settings.validate_store()

    def test_redis_url_ignored_for_memory_backend(self):
        settings = Settings(store={"redis_url": "http://localhost"})
        settings.validate_store()
