"""
Shared pytest fixtures and helpers.
"""

import logging
from datetime import datetime
from datetime import timezone

import pytest

from kerio_sync.context import SyncContext
from kerio_sync.models import AccessLevel
from kerio_sync.models import ItemKind
from kerio_sync.models import LocalCollection
from kerio_sync.models import SyncConfig
from kerio_sync.models import SyncPassResult
from kerio_sync.store import LocalStore

ACCOUNT = "alice@example.com"
REMOTE_CAL_ID = "F1"

# Fixed "now" so the sync window is deterministic.
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def event_fields(summary: str = "Test Event", description: str = "", location: str = "") -> dict:
    return {"summary": summary, "description": description, "location": location}


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_736_942_400.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_collection(
    store: LocalStore,
    remote_id: str = REMOTE_CAL_ID,
    read_only: bool = False,
    kind: ItemKind = ItemKind.EVENT,
    display_name: str = "Calendar",
) -> LocalCollection:
    return store.insert_collection(
        kind,
        remote_id,
        display_name,
        AccessLevel.READ if read_only else AccessLevel.OWNER,
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def store(db_path):
    with LocalStore(db_path, ACCOUNT) as s:
        yield s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context(db_path, clock):
    return SyncContext(db_path, clock=clock)


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(
        account=ACCOUNT,
        server_url="mail.example.com",
        username=ACCOUNT,
        password="secret",
        state_db_path=db_path,
        sync_contacts=False,
    )


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_stats():
    return SyncPassResult()
