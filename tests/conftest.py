# tests/conftest.py
"""
Pytest configuration for the follower pipeline tests.

- Puts the project root on sys.path so `import db.*`, `import monitor.*`
  etc. work without installing the project.
- Points configuration at throwaway values before any project module
  reads it.
"""

import os
import sys
from pathlib import Path


def _ensure_project_root_in_sys_path() -> None:
    # This file is located at: tests/conftest.py
    project_root = str(Path(__file__).resolve().parents[1])
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


def _ensure_test_env_vars() -> None:
    os.environ.setdefault('DATABASE_URL', 'sqlite://')
    os.environ.setdefault('DIRECTORY_BEARER_TOKEN', 'dummy-token-for-tests')
    os.environ.setdefault('TELEGRAM_BOT_TOKEN', '')


_ensure_project_root_in_sys_path()
_ensure_test_env_vars()

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.blob_store import FileBlobStore
from db.models import Base


@pytest.fixture
def session_factory():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def blob_store(tmp_path):
    return FileBlobStore(str(tmp_path / 'snapshots'))
