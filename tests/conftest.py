import sqlite3
from dataclasses import replace
from pathlib import Path

import pytest

from edev.config.settings import Settings
from edev.db.sqlite import GatewayOptions, SQLite

ROOT = Path(__file__).resolve().parent.parent
SCHEMA_UP = ROOT / "migration" / "001_base_system.up.sql"

FAST = GatewayOptions(write_timeout=1.0, read_timeout=1.0, checkpoint_timeout=1.0)


def apply_sql_file(storage: SQLite, path: Path) -> None:
    """Feed a .sql file to the gateway one complete statement at a time."""
    buf = ""
    for line in path.read_text(encoding="utf-8").splitlines(keepends=True):
        if not buf and (not line.strip() or line.lstrip().startswith("--")):
            continue
        buf += line
        if sqlite3.complete_statement(buf):
            storage.execute(buf)
            buf = ""


def make_settings(**overrides) -> Settings:
    base = Settings(
        app_env="test",
        log_level="DEBUG",
        logs_dir="logs",
        address="127.0.0.1:3210",
        base_url="http://testserver",
        git_tag="test",
        database_url="",
        github_client_id="gh-id",
        github_client_secret="gh-secret",
        x_client_id="x-id",
        x_client_secret="x-secret",
        fake_oauth_enabled=False,
        fake_oauth_base_url="http://fakeoauth",
        fake_oauth_client_id="fake-client-id",
        fake_oauth_redirect="/fake/oauth/callback",
        session_max_age_seconds=3600,
        session_cleanup_interval_seconds=300,
        http_timeout_seconds=5,
    )
    return replace(base, **overrides)


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "test.db")


@pytest.fixture()
def storage(db_path):
    s = SQLite.open(db_path, FAST)
    yield s
    s.close()


@pytest.fixture()
def schema_storage(storage):
    apply_sql_file(storage, SCHEMA_UP)
    return storage
