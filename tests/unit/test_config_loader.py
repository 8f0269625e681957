from __future__ import annotations
import pytest
from pathlib import Path
from dealer_ingest.config.loader import (
    ConfigError,
    DatabaseConfig,
    WorkerConfig,
    load_config,
    load_env_file,
    resolve_broker_url,
    resolve_config_path,
    resolve_dsn,
)


def test_load_config_success(write_config: Path):
    cfg = load_config(write_config)
    assert cfg.bulk.batch_size == 50
    assert cfg.bulk.parallelism == 2
    assert cfg.progress.error_cap == 20
    assert cfg.worker.fragment_phases is True
    assert cfg.worker.decode_offload is False
    assert cfg.rules.dealer_code_prefix == "ZAK"
    assert cfg.timezone == "UTC"
    # untouched sections keep their defaults
    assert cfg.upload.chunk_ttl_seconds == 3600
    assert cfg.rules.customer_email_domain == "noemail.portal.invalid"


def test_default_location_falls_back_to_defaults(temp_workdir: Path):
    cfg = load_config()
    assert cfg.bulk.batch_size == 1000
    assert cfg.progress.write_interval_seconds == 5.0


def test_default_location_is_read(write_config: Path):
    assert load_config().bulk.batch_size == 50


def test_load_config_missing_file(temp_workdir: Path):
    missing = temp_workdir / "config" / "not_exists.yml"
    with pytest.raises(ConfigError):
        load_config(missing)


def test_load_config_invalid_yaml(write_config: Path):
    write_config.write_text("bulk: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid yaml"):
        load_config(write_config)


def test_load_config_non_mapping_root(write_config: Path):
    write_config.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(write_config)


def test_load_config_out_of_range_value(write_config: Path):
    text = write_config.read_text(encoding="utf-8").replace("parallelism: 2", "parallelism: 0")
    write_config.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_config(write_config)
    assert "config validation failed" in str(e.value)


def test_load_config_extra_field(write_config: Path):
    # rejected by additionalProperties: false
    text = write_config.read_text(encoding="utf-8") + "\nextra_field: not_allowed\n"
    write_config.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_config(write_config)
    assert "config validation failed" in str(e.value)


def test_allowed_extensions_are_lowercased(write_config: Path):
    text = write_config.read_text(encoding="utf-8") + "upload:\n  allowed_extensions: [\".csv\", \".xlsx\"]\n"
    write_config.write_text(text, encoding="utf-8")
    assert load_config(write_config).upload.allowed_extensions == (".csv", ".xlsx")


def test_resolve_config_path(monkeypatch):
    monkeypatch.delenv("DEALER_INGEST_CONFIG", raising=False)
    assert resolve_config_path() is None
    assert resolve_config_path("a.yml") == Path("a.yml")
    monkeypatch.setenv("DEALER_INGEST_CONFIG", "/etc/ingest.yml")
    assert resolve_config_path() == Path("/etc/ingest.yml")
    assert resolve_config_path("b.yml") == Path("b.yml")


@pytest.fixture()
def clean_pg_env(monkeypatch):
    for name in ("DATABASE_URL", "PGDSN", "PGHOST", "PGPORT", "PGUSER", "PGPASSWORD", "PGDATABASE",
                 "CELERY_BROKER_URL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_resolve_dsn_priority(clean_pg_env):
    cfg = DatabaseConfig(host="db", port=6543, user="portal", database="portal", dsn=None)
    assert resolve_dsn(cfg) == "host=db port=6543 user=portal dbname=portal"
    clean_pg_env.setenv("PGPASSWORD", "s3cret")
    assert resolve_dsn(cfg).endswith(" password=s3cret")
    assert resolve_dsn(DatabaseConfig(dsn="postgresql://cfg/db")) == "postgresql://cfg/db"
    clean_pg_env.setenv("DATABASE_URL", "postgresql://env/db")
    assert resolve_dsn(DatabaseConfig(dsn="postgresql://cfg/db")) == "postgresql://env/db"


def test_resolve_broker_url(clean_pg_env):
    assert resolve_broker_url(WorkerConfig()) == "redis://localhost:6379/0"
    assert resolve_broker_url(WorkerConfig(broker_url="redis://cfg:6379/1")) == "redis://cfg:6379/1"
    clean_pg_env.setenv("CELERY_BROKER_URL", "amqp://env//")
    assert resolve_broker_url(WorkerConfig(broker_url="redis://cfg:6379/1")) == "amqp://env//"


def test_load_env_file_overrides(temp_workdir: Path, clean_pg_env):
    clean_pg_env.setenv("DATABASE_URL", "postgresql://inherited/db")
    assert load_env_file() is False
    (temp_workdir / ".env").write_text("DATABASE_URL=postgresql://dotenv/db\n", encoding="utf-8")
    assert load_env_file() is True
    assert resolve_dsn(DatabaseConfig()) == "postgresql://dotenv/db"
