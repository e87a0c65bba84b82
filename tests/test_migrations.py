"""Tests for the Alembic migration chain."""

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

import lifecycle.models  # noqa: F401
from lifecycle.database import Base

ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def migration_db(tmp_path):
    db_path = tmp_path / "migrated.db"
    config = Config()
    config.set_main_option("script_location", str(ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{db_path}")
    return config, db_path


def _tables(db_path: Path) -> set[str]:
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        return set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


class TestMigrations:
    def test_upgrade_creates_every_model_table(self, migration_db):
        config, db_path = migration_db

        command.upgrade(config, "head")

        assert _tables(db_path) - {"alembic_version"} == set(Base.metadata.tables)

    def test_named_indexes(self, migration_db):
        config, db_path = migration_db
        command.upgrade(config, "head")

        engine = create_engine(f"sqlite:///{db_path}")
        try:
            inspector = inspect(engine)
            audit = {ix["name"] for ix in inspector.get_indexes("audit_records")}
            requests = {ix["name"] for ix in inspector.get_indexes("data_subject_requests")}
        finally:
            engine.dispose()
        assert "ix_audit_records_action_subject" in audit
        assert "ix_dsr_type_status_scheduled" in requests

    def test_downgrade_drops_everything(self, migration_db):
        config, db_path = migration_db
        command.upgrade(config, "head")

        command.downgrade(config, "base")

        assert _tables(db_path) <= {"alembic_version"}
