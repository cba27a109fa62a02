"""
opsdash.config — Environment Configuration Loader
==================================================

**Why this file exists:**
Every tunable of the backend (database location, Google client id, signing
secret, CORS origins, broadcast cadence, …) comes from the process
environment, optionally seeded from a ``.env`` file.  Non-secret policy data
that is awkward to express as env vars, chiefly the role rules, may live in
an optional YAML file named by ``CONFIG_FILE``.

Usage::

    from opsdash.config import load_config

    cfg = load_config()          # reads os.environ (+ CONFIG_FILE if set)
    print(cfg.port)              # 4000
    print(cfg.database_url)      # postgresql+psycopg2://…

The resulting :class:`DashboardConfig` is read-only for the life of the
process.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml
from sqlalchemy.engine import URL

from opsdash.errors import ConfigError

DEFAULT_PORT = 4000
DEFAULT_TICK_SECONDS = 5.0
DEFAULT_DB_TIMEOUT_SECONDS = 5.0

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off", ""})


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DashboardConfig:
    """Immutable configuration resolved once at startup."""

    # Server
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    shutdown_grace_seconds: float = 10.0
    cors_origins: tuple[str, ...] = ()

    # Database
    database_url: str = "sqlite://"
    db_pool_size: int = 5
    db_timeout_seconds: float = DEFAULT_DB_TIMEOUT_SECONDS

    # Identity / sessions
    google_client_id: str | None = None
    jwt_secret: str | None = None
    allow_client_identity: bool = False

    # Role policy
    admin_domains: tuple[str, ...] = ()
    role_rules: tuple[dict, ...] = ()

    # Live metrics
    tick_seconds: float = DEFAULT_TICK_SECONDS
    metrics_history: int = 60
    socket_send_timeout: float = 2.0

    # Optional control-plane (Kubernetes) credentials
    kube_api_url: str | None = None
    kube_token: str | None = None
    kube_ca_file: str | None = None
    kube_namespace: str | None = None


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def _get(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _int(env: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _csv(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip().rstrip("/") for part in raw.split(",") if part.strip())


def database_url_from_env(env: Mapping[str, str]) -> str:
    """Resolve the SQLAlchemy URL.

    Priority:
      1) PG_DSN
      2) DATABASE_URL
      3) DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD
    """
    dsn = _get(env, "PG_DSN") or _get(env, "DATABASE_URL")
    if dsn:
        # libpq-style "postgres://" URLs are not accepted by SQLAlchemy
        if dsn.startswith("postgres://"):
            dsn = "postgresql+psycopg2://" + dsn[len("postgres://"):]
        elif dsn.startswith("postgresql://"):
            dsn = "postgresql+psycopg2://" + dsn[len("postgresql://"):]
        return dsn

    host = _get(env, "DB_HOST")
    if host is None:
        raise ConfigError(
            "No database configured: set PG_DSN, DATABASE_URL or DB_HOST "
            "(with DB_NAME, DB_USER, DB_PASSWORD)."
        )
    url = URL.create(
        "postgresql+psycopg2",
        username=_get(env, "DB_USER"),
        password=_get(env, "DB_PASSWORD"),
        host=host,
        port=_int(env, "DB_PORT", 5432, minimum=1),
        database=_get(env, "DB_NAME"),
    )
    return url.render_as_string(hide_password=False)


def _load_yaml(path: str | Path) -> dict:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path.resolve()}")
    with open(config_path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")
    return raw


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(
    env: Mapping[str, str] | None = None,
    path: str | Path | None = None,
) -> DashboardConfig:
    """Build a :class:`DashboardConfig` from *env* (default ``os.environ``).

    Parameters
    ----------
    env:
        Environment mapping.  Tests pass a plain dict.
    path:
        Optional YAML file; defaults to ``$CONFIG_FILE`` when set.

    Raises
    ------
    ConfigError
        If a value is malformed or no database location is configured.
    """
    env = os.environ if env is None else env
    file_path = path or _get(env, "CONFIG_FILE")
    file_cfg = _load_yaml(file_path) if file_path else {}

    rules = file_cfg.get("role_rules") or []
    if not isinstance(rules, list) or not all(isinstance(r, dict) for r in rules):
        raise ConfigError("role_rules must be a list of mappings")

    admin_domains = _csv(_get(env, "ADMIN_DOMAINS")) or tuple(
        str(d).strip().lower() for d in file_cfg.get("admin_domains", []) if str(d).strip()
    )
    cors = _csv(_get(env, "CORS_ORIGIN")) or tuple(file_cfg.get("cors_origins", []))

    log_level = (_get(env, "LOG_LEVEL") or "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got {log_level!r}")

    return DashboardConfig(
        host=_get(env, "HOST") or "0.0.0.0",
        port=_int(env, "PORT", DEFAULT_PORT, minimum=1),
        log_level=log_level,
        shutdown_grace_seconds=_float(env, "SHUTDOWN_GRACE_SECONDS", 10.0),
        cors_origins=cors,
        database_url=database_url_from_env(env),
        db_pool_size=_int(env, "DB_POOL_SIZE", 5, minimum=1),
        db_timeout_seconds=_float(env, "DB_TIMEOUT_SECONDS", DEFAULT_DB_TIMEOUT_SECONDS),
        google_client_id=_get(env, "GOOGLE_CLIENT_ID"),
        jwt_secret=_get(env, "JWT_SECRET"),
        allow_client_identity=_bool(env, "ALLOW_CLIENT_IDENTITY", False),
        admin_domains=tuple(d.lower().lstrip("@") for d in admin_domains),
        role_rules=tuple(rules),
        tick_seconds=_float(env, "METRICS_TICK_SECONDS", DEFAULT_TICK_SECONDS),
        metrics_history=_int(env, "METRICS_HISTORY", 60, minimum=1),
        socket_send_timeout=_float(env, "SOCKET_SEND_TIMEOUT", 2.0),
        kube_api_url=_get(env, "KUBE_API_URL"),
        kube_token=_get(env, "KUBE_TOKEN"),
        kube_ca_file=_get(env, "KUBE_CA_FILE"),
        kube_namespace=_get(env, "KUBE_NAMESPACE"),
    )
