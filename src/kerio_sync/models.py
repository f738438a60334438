"""
Pure data models — no network or sqlite imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from enum import IntEnum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/kerio-sync/state.db"
DEFAULT_CONFIG = Path.home() / ".config/kerio-sync.conf"


class KerioSyncError(Exception):
    """Base exception for sync errors."""

    pass


class AuthFailure(KerioSyncError):
    """Credentials rejected by the server. Fatal to the pass."""


class TransientIOFailure(KerioSyncError):
    """Network, timeout or server-side failure. Expected to heal on the next pass."""


class ParseFailure(KerioSyncError):
    """Malformed or unexpected remote payload."""


class IdentityUnresolved(KerioSyncError):
    """A fallback identifier could not be repaired to a canonical one."""


class ConcurrencyConflict(KerioSyncError):
    """Another pass already holds the run guard."""


class SyncCancelled(KerioSyncError):
    """The pass was cancelled from outside."""


class RemoteItemNotFound(KerioSyncError):
    """The server does not know the addressed item (already deleted)."""


class ItemKind(str, Enum):
    EVENT = "event"
    CONTACT = "contact"


class AccessLevel(IntEnum):
    """Local collection access level (values match the platform calendar provider)."""

    READ = 200
    OWNER = 700


@dataclass
class RemoteCollection:
    """A server folder: calendar or address book."""

    id: str
    display_name: str
    owner: str = ""
    read_only: bool = False
    kind: ItemKind = ItemKind.EVENT
    color: str | None = None


@dataclass
class LocalCollection:
    """Device-side counterpart of a RemoteCollection.

    ``visible``, ``sync_enabled`` and ``color`` belong to the user: they are
    defaulted on insert and never refreshed from the server afterwards.
    """

    local_id: int
    account: str
    kind: ItemKind
    remote_id: str | None
    display_name: str
    access_level: AccessLevel = AccessLevel.OWNER
    visible: bool = True
    sync_enabled: bool = True
    color: int | None = None

    @property
    def read_only(self) -> bool:
        return self.access_level < AccessLevel.OWNER


@dataclass(frozen=True)
class RemoteRange:
    """Start/end exactly as the server spells them.

    All-day spans use date-only values (``YYYYMMDD``) with an *inclusive* end.
    Timed spans use UTC date-times (``YYYYMMDDTHHMMSSZ``).
    """

    start: str
    end: str
    all_day: bool = False


@dataclass
class RemoteItem:
    """An event occurrence or contact as listed by the server."""

    canonical_id: str | None
    collection_id: str
    kind: ItemKind = ItemKind.EVENT
    secondary_id: str | None = None
    fields: dict = field(default_factory=dict)
    last_modified: datetime | None = None
    range: RemoteRange | None = None


@dataclass
class RemoteListing:
    """Result of a full-window fetch: parsed items plus rejected raw entries."""

    items: list[RemoteItem] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


@dataclass
class LocalItem:
    """A device-side event or contact row.

    ``sync_id`` joins to RemoteItem.canonical_id (or holds a fallback form while
    resolution is pending); ``secondary_id`` joins to RemoteItem.secondary_id.
    ``start``/``end`` use exclusive-end semantics; all-day spans are day-aligned
    UTC instants.
    """

    local_id: int
    collection_id: int
    kind: ItemKind = ItemKind.EVENT
    sync_id: str | None = None
    secondary_id: str | None = None
    last_known_remote_modified: int = 0  # epoch millis, 0 = unknown
    dirty: bool = False
    deleted: bool = False
    fields: dict = field(default_factory=dict)
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False


@dataclass
class SyncConfig:
    """Configuration for one account's sync passes."""

    account: str
    server_url: str
    username: str
    password: str
    state_db_path: Path = DEFAULT_STATE_DB
    verify_tls: bool = True
    past_window_days: int = 180
    future_window_days: int = 365
    sync_calendars: bool = True
    sync_contacts: bool = True
    suppress_start_seconds: int = 30
    suppress_end_seconds: int = 8
    lease_seconds: int = 3600
    verbose: bool = False

    @property
    def kinds(self) -> list[ItemKind]:
        kinds = []
        if self.sync_calendars:
            kinds.append(ItemKind.EVENT)
        if self.sync_contacts:
            kinds.append(ItemKind.CONTACT)
        return kinds


@dataclass
class SyncPassResult:
    """Statistics for one pass. Counters only ever grow during a pass."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    auth_failures: int = 0
    io_failures: int = 0
    parse_failures: int = 0
    deferred: int = 0
    cancelled: bool = False
    skipped: bool = False
    reason: str = ""

    @property
    def failed(self) -> bool:
        return bool(self.auth_failures or self.io_failures or self.parse_failures)

    def summary(self) -> str:
        parts = [
            f"{self.inserted} inserted",
            f"{self.updated} updated",
            f"{self.deleted} deleted",
        ]
        if self.auth_failures:
            parts.append(f"{self.auth_failures} auth failures")
        if self.io_failures:
            parts.append(f"{self.io_failures} I/O failures")
        if self.parse_failures:
            parts.append(f"{self.parse_failures} parse failures")
        if self.deferred:
            parts.append(f"{self.deferred} deferred")
        if self.cancelled:
            parts.append("cancelled")
        return ", ".join(parts)
