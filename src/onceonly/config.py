"""Configuration loading and store construction for OnceOnly.

Settings are read once from the environment at process start; the store
built from them is shared by every execute() call until shutdown.

Environment Variables:
    ONCEONLY_CLAIM_WINDOW_SECONDS: Claim TTL in seconds (default: 360)
    ONCEONLY_STORE_BACKEND: "memory", "sqlite", "postgres" or "dynamodb"
        (default: "sqlite")
    ONCEONLY_SQLITE_PATH: SQLite database file for the sqlite backend
    ONCEONLY_DATABASE_URL: SQLAlchemy URL for the postgres backend
    ONCEONLY_DYNAMODB_TABLE: Table for the dynamodb backend (falls back to TABLE_NAME)
    ONCEONLY_DYNAMODB_REGION: AWS region for the dynamodb backend (optional)
    ONCEONLY_WEBHOOK_URL: Relay target for the HTTP entry point
    ONCEONLY_WEBHOOK_TIMEOUT_SECONDS: Relay timeout in seconds (default: 30)

Missing or invalid configuration fails closed with ConfigError.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from onceonly.idempotency.coordinator import (
    DEFAULT_CLAIM_WINDOW_SECONDS,
    IdempotencyCoordinator,
)
from onceonly.idempotency.record import DEFAULT_CODEC, ResultCodec
from onceonly.idempotency.store import (
    DEFAULT_SQLITE_PATH,
    ONCEONLY_SQLITE_PATH_ENV,
    IdempotencyStore,
    InMemoryIdempotencyStore,
    SqliteIdempotencyStore,
)

if TYPE_CHECKING:
    from onceonly.idempotency.hooks import TransitionHook

logger = logging.getLogger(__name__)

ONCEONLY_CLAIM_WINDOW_SECONDS_ENV = "ONCEONLY_CLAIM_WINDOW_SECONDS"
ONCEONLY_STORE_BACKEND_ENV = "ONCEONLY_STORE_BACKEND"
ONCEONLY_DATABASE_URL_ENV = "ONCEONLY_DATABASE_URL"
ONCEONLY_DYNAMODB_TABLE_ENV = "ONCEONLY_DYNAMODB_TABLE"
ONCEONLY_DYNAMODB_REGION_ENV = "ONCEONLY_DYNAMODB_REGION"
ONCEONLY_WEBHOOK_URL_ENV = "ONCEONLY_WEBHOOK_URL"
ONCEONLY_WEBHOOK_TIMEOUT_SECONDS_ENV = "ONCEONLY_WEBHOOK_TIMEOUT_SECONDS"
TABLE_NAME_ENV = "TABLE_NAME"

STORE_BACKENDS = frozenset({"memory", "sqlite", "postgres", "dynamodb"})
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 30.0


class ConfigError(Exception):
    """Raised when configuration is missing or invalid.

    This is a fail-closed error - the coordinator is not built without a
    valid store configuration.
    """

    pass


@dataclass(frozen=True)
class OnceOnlySettings:
    """Process-wide settings.

    Attributes:
        claim_window_seconds: How long a claim stays live.
        store_backend: One of STORE_BACKENDS.
        sqlite_path: Database file for the sqlite backend.
        database_url: SQLAlchemy URL for the postgres backend.
        dynamodb_table: Table name for the dynamodb backend.
        dynamodb_region: AWS region for the dynamodb backend.
        webhook_url: Relay target used by the HTTP entry point.
        webhook_timeout_seconds: Relay timeout.
    """

    claim_window_seconds: int = DEFAULT_CLAIM_WINDOW_SECONDS
    store_backend: str = "sqlite"
    sqlite_path: str = DEFAULT_SQLITE_PATH
    database_url: str | None = None
    dynamodb_table: str | None = None
    dynamodb_region: str | None = None
    webhook_url: str | None = None
    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.claim_window_seconds <= 0:
            raise ConfigError(f"{ONCEONLY_CLAIM_WINDOW_SECONDS_ENV} must be positive")
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigError(
                f"Unknown store backend {self.store_backend!r}; "
                f"expected one of {', '.join(sorted(STORE_BACKENDS))}"
            )
        if self.webhook_timeout_seconds <= 0:
            raise ConfigError(f"{ONCEONLY_WEBHOOK_TIMEOUT_SECONDS_ENV} must be positive")


def _get_env_str(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key, "").strip()
    return value or None


def _get_env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = _get_env_str(environ, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e


def _get_env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _get_env_str(environ, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e


def load_settings(environ: Mapping[str, str] | None = None) -> OnceOnlySettings:
    """Load settings from the environment.

    Args:
        environ: Mapping to read from. Defaults to os.environ.

    Returns:
        Validated OnceOnlySettings.

    Raises:
        ConfigError: If a value is malformed.
    """
    env = os.environ if environ is None else environ

    return OnceOnlySettings(
        claim_window_seconds=_get_env_int(
            env, ONCEONLY_CLAIM_WINDOW_SECONDS_ENV, DEFAULT_CLAIM_WINDOW_SECONDS
        ),
        store_backend=(_get_env_str(env, ONCEONLY_STORE_BACKEND_ENV) or "sqlite").lower(),
        sqlite_path=_get_env_str(env, ONCEONLY_SQLITE_PATH_ENV) or DEFAULT_SQLITE_PATH,
        database_url=_get_env_str(env, ONCEONLY_DATABASE_URL_ENV),
        dynamodb_table=(
            _get_env_str(env, ONCEONLY_DYNAMODB_TABLE_ENV) or _get_env_str(env, TABLE_NAME_ENV)
        ),
        dynamodb_region=_get_env_str(env, ONCEONLY_DYNAMODB_REGION_ENV),
        webhook_url=_get_env_str(env, ONCEONLY_WEBHOOK_URL_ENV),
        webhook_timeout_seconds=_get_env_float(
            env, ONCEONLY_WEBHOOK_TIMEOUT_SECONDS_ENV, DEFAULT_WEBHOOK_TIMEOUT_SECONDS
        ),
    )


def _normalize_database_url(url: str) -> str:
    """Rewrite the legacy postgres:// scheme that SQLAlchemy rejects."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _create_sql_store(settings: OnceOnlySettings, codec: ResultCodec) -> IdempotencyStore:
    from sqlalchemy import create_engine

    from onceonly.idempotency.sql_store import SqlAlchemyIdempotencyStore

    if not settings.database_url:
        raise ConfigError(
            f"Database URL not configured. Set {ONCEONLY_DATABASE_URL_ENV} environment variable."
        )

    engine = create_engine(
        _normalize_database_url(settings.database_url),
        pool_pre_ping=True,
        echo=False,
    )
    store = SqlAlchemyIdempotencyStore(engine, codec=codec)
    store.create_schema()
    return store


def _create_dynamodb_store(settings: OnceOnlySettings, codec: ResultCodec) -> IdempotencyStore:
    import boto3
    from botocore.config import Config

    from onceonly.idempotency.dynamodb_store import DynamoDbIdempotencyStore

    if not settings.dynamodb_table:
        raise ConfigError(
            f"DynamoDB table not configured. Set {ONCEONLY_DYNAMODB_TABLE_ENV} "
            f"or {TABLE_NAME_ENV} environment variable."
        )

    client = boto3.client(
        "dynamodb",
        region_name=settings.dynamodb_region,
        config=Config(retries={"max_attempts": 3, "mode": "standard"}),
    )
    return DynamoDbIdempotencyStore(client, settings.dynamodb_table, codec=codec)


def create_idempotency_store(
    settings: OnceOnlySettings, codec: ResultCodec = DEFAULT_CODEC
) -> IdempotencyStore:
    """Build the store adapter named by settings.store_backend.

    Call once during process initialization and share the result.

    Raises:
        ConfigError: If the selected backend is missing required settings.
    """
    backend = settings.store_backend
    if backend == "memory":
        store: IdempotencyStore = InMemoryIdempotencyStore(codec=codec)
    elif backend == "sqlite":
        store = SqliteIdempotencyStore(db_path=settings.sqlite_path, codec=codec)
    elif backend == "postgres":
        store = _create_sql_store(settings, codec)
    else:
        store = _create_dynamodb_store(settings, codec)

    logger.info("Created idempotency store backend=%s", backend)
    return store


def create_coordinator(
    settings: OnceOnlySettings,
    store: IdempotencyStore | None = None,
    hook: TransitionHook | None = None,
) -> IdempotencyCoordinator:
    """Build a coordinator from settings, creating the store if not given."""
    if store is None:
        store = create_idempotency_store(settings)
    return IdempotencyCoordinator(
        store,
        claim_window_seconds=settings.claim_window_seconds,
        hook=hook,
    )
