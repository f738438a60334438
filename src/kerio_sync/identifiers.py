"""
Tagged identifiers for the two server id spaces plus the local placeholder.

Range queries return occurrence ids (``Canonical``), create calls return
the parent event id (``Secondary``). When the occurrence id cannot be looked
up right after a create, the item keeps a ``Fallback`` placeholder built
from the parent id and the approximate start until it is repaired.
"""

from dataclasses import dataclass
from datetime import datetime

from kerio_sync.dates import from_millis
from kerio_sync.dates import to_millis
from kerio_sync.models import ItemKind
from kerio_sync.models import LocalItem

CANONICAL_PREFIX = "keriostorage:"
FALLBACK_SEPARATOR = "@"


@dataclass(frozen=True)
class Canonical:
    id: str

    @property
    def stored(self) -> str:
        return self.id


@dataclass(frozen=True)
class Secondary:
    id: str

    @property
    def stored(self) -> str:
        return self.id


@dataclass(frozen=True)
class Fallback:
    secondary_id: str
    approx_start_ms: int

    @property
    def stored(self) -> str:
        return f"{self.secondary_id}{FALLBACK_SEPARATOR}{self.approx_start_ms}"

    @property
    def approx_start(self) -> datetime | None:
        return from_millis(self.approx_start_ms)


Identifier = Canonical | Secondary | Fallback


def is_canonical(value: str | None) -> bool:
    """Canonical occurrence ids always carry the storage scheme prefix."""
    return bool(value) and value.startswith(CANONICAL_PREFIX)


def make_fallback(secondary_id: str, approx_start: datetime | None) -> Fallback:
    return Fallback(secondary_id=secondary_id, approx_start_ms=to_millis(approx_start))


def parse_stored(value: str | None, kind: ItemKind = ItemKind.EVENT) -> Identifier | None:
    """
    Classify an identifier string as persisted in the local store.

    Contacts have a single id space: whatever the server handed back on
    create is canonical.
    """
    if not value:
        return None
    if kind is ItemKind.CONTACT or is_canonical(value):
        return Canonical(value)

    head, sep, tail = value.rpartition(FALLBACK_SEPARATOR)
    if sep and head and tail.lstrip("-").isdigit():
        return Fallback(secondary_id=head, approx_start_ms=int(tail))
    return Secondary(value)


def classify(item: LocalItem) -> Identifier | None:
    """
    Identifier state of a local item.

    ``None`` means the item was never pushed. An item with only a secondary
    id (create succeeded, placeholder never written) is treated as
    ``Secondary`` so it goes through repair instead of being created twice.
    """
    ident = parse_stored(item.sync_id, item.kind)
    if ident is not None:
        return ident
    if item.secondary_id:
        return Secondary(item.secondary_id)
    return None


def needs_repair(item: LocalItem) -> bool:
    return isinstance(classify(item), (Secondary, Fallback))
