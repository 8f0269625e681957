from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from dotenv import load_dotenv
from jsonschema.exceptions import ValidationError

"""Configuration loader for the ingestion pipeline.

Responsibilities:
- Load YAML config (config/ingest.yml by default)
- Validate against the packaged JSON schema
- Apply defaults for every tunable
- Resolve store / broker connection settings with environment precedence
"""

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")
DEFAULT_CONFIG_PATH = Path("config/ingest.yml")

__all__ = [
    "ConfigError",
    "DatabaseConfig",
    "UploadConfig",
    "BulkConfig",
    "ProgressConfig",
    "WorkerConfig",
    "ImportRules",
    "IngestConfig",
    "load_config",
    "load_env_file",
    "resolve_config_path",
    "resolve_dsn",
    "resolve_broker_url",
    "resolve_result_backend",
]


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class DatabaseConfig:
    """Document store connection settings.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None
    schema: str | None = None
    min_connections: int = 1
    max_connections: int = 8


@dataclass(frozen=True)
class UploadConfig:
    chunk_ttl_seconds: int = 3600
    chunk_size_bytes: int = 4 * 1024 * 1024
    allowed_extensions: tuple[str, ...] = (".csv", ".xls", ".xlsx")


@dataclass(frozen=True)
class BulkConfig:
    batch_size: int = 1000
    parallelism: int = 4
    batch_timeout_seconds: float = 60.0


@dataclass(frozen=True)
class ProgressConfig:
    write_interval_seconds: float = 5.0
    heartbeat_seconds: float = 20.0
    stuck_after_minutes: int = 10
    error_cap: int = 20
    debug_log_cap: int = 100


@dataclass(frozen=True)
class WorkerConfig:
    broker_url: str | None = None
    result_backend: str | None = None
    fragment_phases: bool = True
    phase_time_limit_seconds: int = 300
    decode_offload: bool = True


@dataclass(frozen=True)
class ImportRules:
    max_distinct_dealer_codes: int = 2000
    dealer_code_prefix: str = "ZAK"
    dealer_email_domain: str = "dealers.portal.invalid"
    customer_email_domain: str = "noemail.portal.invalid"
    title_scan_rows: int = 10


@dataclass(frozen=True)
class IngestConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    rules: ImportRules = field(default_factory=ImportRules)
    logs_directory: str = "./logs"
    timezone: str = "UTC"


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the packaged JSON schema.

    Raises:
        ConfigError: schema file missing / not JSON, or the data violates it
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    return dict(raw)


def load_config(path: Path | None = None) -> IngestConfig:
    """Load and validate the YAML configuration.

    A missing file is an error only when a path is given explicitly; the
    default location falls back to built-in defaults.
    """
    explicit = path is not None
    path = path or DEFAULT_CONFIG_PATH
    if not path.exists():
        if explicit:
            raise ConfigError(f"config file not found: {path}")
        return IngestConfig()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    _validate_config_schema(data)

    upload_raw = _section(data, "upload")
    if "allowed_extensions" in upload_raw:
        upload_raw["allowed_extensions"] = tuple(e.lower() for e in upload_raw["allowed_extensions"])

    return IngestConfig(
        database=DatabaseConfig(**_section(data, "database")),
        upload=UploadConfig(**upload_raw),
        bulk=BulkConfig(**_section(data, "bulk")),
        progress=ProgressConfig(**_section(data, "progress")),
        worker=WorkerConfig(**_section(data, "worker")),
        rules=ImportRules(**_section(data, "rules")),
        logs_directory=data.get("logs_directory", "./logs"),
        timezone=data.get("timezone", "UTC"),
    )


def resolve_config_path(cli_value: str | None = None) -> Path | None:
    if cli_value:
        return Path(cli_value)
    env_value = os.getenv("DEALER_INGEST_CONFIG")
    return Path(env_value) if env_value else None


def load_env_file(path: Path = Path(".env"), override: bool = True) -> bool:
    """Load .env using python-dotenv.

    override=True lets .env values win over the inherited environment so the
    store DSN in .env always takes precedence.
    """
    if not path.exists():
        return False
    return bool(load_dotenv(dotenv_path=path, override=override))


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    """Resolve the PostgreSQL DSN.

    Priority: DATABASE_URL / PGDSN, then the config dsn, then PG* parts with
    config values as fallback.
    """
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


def resolve_broker_url(worker_cfg: WorkerConfig) -> str:
    return os.getenv("CELERY_BROKER_URL") or worker_cfg.broker_url or "redis://localhost:6379/0"


def resolve_result_backend(worker_cfg: WorkerConfig) -> str | None:
    return os.getenv("CELERY_RESULT_BACKEND") or worker_cfg.result_backend
