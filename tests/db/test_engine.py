"""
Tests for engine initialization and transactional scope (db/engine.py).

Covers:
- module engine lifecycle: uninitialized access, init, reset
- init_engine_from_config reads the database section
- session_scope commits on success and rolls back on error
- SAVEPOINTs work on SQLite so audit failures stay isolated
"""

import pytest
from sqlalchemy import func, select

from portfolio_kernel.config.schema import DatabaseSettings, KernelConfig
from portfolio_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_config,
    init_engine_from_url,
    is_postgres,
    reset_engine,
    session_scope,
)
from portfolio_kernel.models.person import PersonModel
from portfolio_kernel.services.person_directory import SqlPersonDirectory


@pytest.fixture
def module_engine():
    engine = init_engine_from_url("sqlite:///:memory:")
    create_tables()
    yield engine
    reset_engine()


def _count_people() -> int:
    with session_scope() as session:
        return session.execute(select(func.count()).select_from(PersonModel)).scalar_one()


class TestLifecycle:
    def test_uninitialized(self):
        reset_engine()
        with pytest.raises(RuntimeError):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session()
        assert is_postgres() is False

    def test_from_config(self):
        config = KernelConfig(database=DatabaseSettings(url="sqlite:///:memory:"))
        try:
            engine = init_engine_from_config(config)
            assert engine is get_engine()
            assert engine.dialect.name == "sqlite"
        finally:
            reset_engine()


class TestSessionScope:
    def test_commit_on_success(self, module_engine):
        with session_scope(timeout_seconds=5) as session:
            SqlPersonDirectory(session).create_person("Ada", "ada@example.com")
        assert _count_people() == 1

    def test_rollback_on_error(self, module_engine):
        with pytest.raises(ValueError):
            with session_scope() as session:
                SqlPersonDirectory(session).create_person("Ada", "ada@example.com")
                raise ValueError("abort")
        assert _count_people() == 0

    def test_savepoint_rollback_keeps_outer_work(self, module_engine):
        with session_scope() as session:
            directory = SqlPersonDirectory(session)
            directory.create_person("Ada", "ada@example.com")
            with pytest.raises(RuntimeError):
                with session.begin_nested():
                    directory.create_person("Bob", "bob@example.com")
                    raise RuntimeError("inner")
        assert _count_people() == 1
