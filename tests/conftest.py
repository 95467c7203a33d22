"""Shared fixtures: every test gets a tracker on its own SQLite file."""
import pytest

from trekker_core.config import Settings
from trekker_core.tracker import Tracker


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "trekker.db"


@pytest.fixture
def settings(db_path):
    return Settings(database_url=f"sqlite:///{db_path}", default_actor="tester", busy_timeout_ms=200)


@pytest.fixture
def tracker(settings):
    tracker = Tracker(settings=settings)
    yield tracker
    tracker.close()


@pytest.fixture
def epic(tracker):
    return tracker.create_epic("Auth", description="Authentication overhaul")


@pytest.fixture
def task(tracker, epic):
    return tracker.create_task("Implement login", epic_id=epic.id)
