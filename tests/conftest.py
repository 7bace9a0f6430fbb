"""Pytest fixtures shared across the test suite."""

import os

os.environ.setdefault('IGDB_CLIENT_ID', 'test-client')
os.environ.setdefault('IGDB_CLIENT_SECRET', 'test-secret')

import pytest

from db import utils as db_utils
from db.repository import SqlAlchemyGameRepository


@pytest.fixture
def database(tmp_path):
    """Return a file-backed SQLite database with the full schema."""

    engine_wrapper = db_utils.build_engine_from_dsn(f"sqlite:///{tmp_path / 'games.db'}")
    engine_wrapper.create_schema()
    yield engine_wrapper
    engine_wrapper.dispose()


@pytest.fixture
def repository_factory(database):
    """Return a callable opening a repository on a fresh session."""

    def factory() -> SqlAlchemyGameRepository:
        return SqlAlchemyGameRepository(database.new_session())

    return factory


@pytest.fixture
def repository(repository_factory):
    repo = repository_factory()
    yield repo
    repo.close()
