"""
Root conftest.py for shared test fixtures and configuration.
This file provides common fixtures used across the test suite.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to Python path for consistent imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from notesync import config as notesync_config
from notesync.DB.Notes_DB import NotesDB
from notesync.Metrics.metrics_logger import reset_metrics
from notesync.Notes.notes_service import NotesService
from notesync.Notes.sync_engine import NotesSyncEngine
from notesync.Notes.sync_queue import SyncQueue
from notesync.Notes.tag_ledger import TagLedger
from Tests.fixtures.remote_gateway_mocks import FakeRemoteGateway, FakeScheduler


# ========== Path and File System Fixtures ==========

@pytest.fixture
def isolated_temp_dir():
    """Create an isolated temporary directory that's always cleaned up."""
    temp_dir = tempfile.mkdtemp(prefix="notesync_test_")
    temp_path = Path(temp_dir)
    yield temp_path
    if temp_path.exists():
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolated_config(isolated_temp_dir, monkeypatch):
    """Point the config loader at a fresh file in a temp dir."""
    config_path = isolated_temp_dir / "config.toml"
    monkeypatch.setenv("NOTESYNC_CONFIG_PATH", str(config_path))
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    notesync_config.load_config(force_reload=True)
    yield config_path
    notesync_config._CONFIG_CACHE = None


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


# ========== Database Fixtures ==========

@pytest.fixture
def notes_db():
    """In-memory notes store."""
    db = NotesDB(":memory:", client_id="test_client")
    yield db
    db.close()


@pytest.fixture
def temp_db_path(isolated_temp_dir):
    """Provide a path for a temporary database file."""
    return isolated_temp_dir / "notes.db"


@pytest.fixture
def ledger(notes_db):
    return TagLedger(notes_db)


@pytest.fixture
def sync_queue(notes_db):
    return SyncQueue(notes_db)


# ========== Sync Fixtures ==========

@pytest.fixture
def fake_gateway():
    return FakeRemoteGateway()


@pytest.fixture
def offline_gateway():
    return FakeRemoteGateway(available=False)


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def engine(notes_db, sync_queue, ledger, fake_gateway):
    return NotesSyncEngine(notes_db, sync_queue, ledger, gateway=fake_gateway)


@pytest.fixture
def notes_service(notes_db, ledger, engine):
    """Notes service whose changes flow into the engine's queue."""
    return NotesService(notes_db, ledger, change_listener=engine.record_local_change)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: wires several components together")


