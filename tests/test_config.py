"""
tests/test_config.py — Environment Configuration
=================================================
"""

from __future__ import annotations

import pytest

from opsdash.config import DashboardConfig, database_url_from_env, load_config
from opsdash.errors import ConfigError

BASE_ENV = {"PG_DSN": "postgresql://ops:pw@db:5432/ops"}


class TestDatabaseUrl:
    def test_pg_dsn_wins(self):
        env = {**BASE_ENV, "DATABASE_URL": "sqlite://", "DB_HOST": "other"}
        assert database_url_from_env(env) == "postgresql+psycopg2://ops:pw@db:5432/ops"

    def test_legacy_postgres_scheme(self):
        assert database_url_from_env({"DATABASE_URL": "postgres://u@h/d"}).startswith(
            "postgresql+psycopg2://"
        )

    def test_parts(self):
        url = database_url_from_env({
            "DB_HOST": "db", "DB_PORT": "6543", "DB_NAME": "ops",
            "DB_USER": "ops", "DB_PASSWORD": "secret",
        })
        assert url == "postgresql+psycopg2://ops:secret@db:6543/ops"

    def test_nothing_configured(self):
        with pytest.raises(ConfigError, match="No database configured"):
            database_url_from_env({})


class TestLoadConfig:
    def test_defaults(self):
        cfg = load_config(BASE_ENV)
        assert cfg.port == 4000
        assert cfg.tick_seconds == 5.0
        assert cfg.allow_client_identity is False
        assert cfg.log_level == "INFO"
        assert cfg.cors_origins == ()

    def test_values_are_parsed(self):
        cfg = load_config({
            **BASE_ENV,
            "PORT": "8080",
            "CORS_ORIGIN": "http://a.test/, http://b.test",
            "ADMIN_DOMAINS": "@Corp.io",
            "ALLOW_CLIENT_IDENTITY": "yes",
            "METRICS_TICK_SECONDS": "2.5",
            "LOG_LEVEL": "debug",
        })
        assert cfg.port == 8080
        assert cfg.cors_origins == ("http://a.test", "http://b.test")
        assert cfg.admin_domains == ("corp.io",)
        assert cfg.allow_client_identity is True
        assert cfg.tick_seconds == 2.5
        assert cfg.log_level == "DEBUG"

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("PORT", "http"),
            ("PORT", "0"),
            ("METRICS_TICK_SECONDS", "-1"),
            ("ALLOW_CLIENT_IDENTITY", "maybe"),
            ("LOG_LEVEL", "LOUD"),
        ],
    )
    def test_invalid_values(self, key, value):
        with pytest.raises(ConfigError):
            load_config({**BASE_ENV, key: value})

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "opsdash.yaml"
        path.write_text(
            "role_rules:\n"
            "  - {match: equals, value: lead@x.com, role: admin}\n"
            "admin_domains: [corp.io]\n",
            encoding="utf-8",
        )
        cfg = load_config({**BASE_ENV, "CONFIG_FILE": str(path)})
        assert cfg.role_rules == ({"match": "equals", "value": "lead@x.com", "role": "admin"},)
        assert cfg.admin_domains == ("corp.io",)

    def test_missing_yaml_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(BASE_ENV, path=tmp_path / "nope.yaml")

    def test_bad_rules_shape(self, tmp_path):
        path = tmp_path / "opsdash.yaml"
        path.write_text("role_rules: admin\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(BASE_ENV, path=path)

    def test_config_is_frozen(self):
        cfg = DashboardConfig()
        with pytest.raises(AttributeError):
            cfg.port = 1  # type: ignore[misc]
