"""
Persisted sync context: key/value state, change-loop suppression, run guard.

All state lives in the same SQLite file as the local store so it survives
a process restart in the middle of a suppression window or a pass. Every
operation opens its own short-lived connection, which makes one instance
safe to share between threads.
"""

import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable
from collections.abc import Iterator
from contextlib import closing
from contextlib import contextmanager
from pathlib import Path

from kerio_sync.models import ConcurrencyConflict
from kerio_sync.models import SyncCancelled

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

SUPPRESS_UNTIL_KEY = "suppress_until_ms"
SUPPRESS_REASON_KEY = "suppress_reason"


class SyncContext:
    """Small key/value table shared by the suppressor and any trigger source."""

    def __init__(self, db_path: Path, clock: Clock = time.time):
        self.db_path = db_path
        self.clock = clock
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self.connect()) as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS sync_context (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at INTEGER NOT NULL
                );
                CREATE TABLE IF NOT EXISTS run_lease (
                    account TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at INTEGER NOT NULL
                );
            """)

    def connect(self) -> sqlite3.Connection:
        # Autocommit mode; callers that need a transaction issue BEGIN themselves.
        conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, key: str, default: str | None = None) -> str | None:
        with closing(self.connect()) as conn:
            row = conn.execute("SELECT value FROM sync_context WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set(self, key: str, value: str | None):
        with closing(self.connect()) as conn:
            conn.execute(
                "INSERT INTO sync_context (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, value, int(self.clock())),
            )

    def delete(self, key: str):
        with closing(self.connect()) as conn:
            conn.execute("DELETE FROM sync_context WHERE key = ?", (key,))


class ChangeSuppressor:
    """
    Time-windowed gate against self-triggered passes.

    The window is an absolute expiry timestamp in the context table, so a
    fresh process sees a window armed by one that has since exited.
    """

    def __init__(self, context: SyncContext, scope: str = ""):
        self.context = context
        self._prefix = f"{scope}:" if scope else ""

    def _key(self, name: str) -> str:
        return self._prefix + name

    def _now_ms(self) -> int:
        return int(self.context.clock() * 1000)

    def suppress_for(self, seconds: float, reason: str = ""):
        """Arm (or re-arm) the window to end ``seconds`` from now."""
        until = self._now_ms() + int(seconds * 1000)
        self.context.set(self._key(SUPPRESS_UNTIL_KEY), str(until))
        self.context.set(self._key(SUPPRESS_REASON_KEY), reason)
        logger.debug(f"Change notifications suppressed for {seconds}s ({reason or 'no reason'})")

    @property
    def until_ms(self) -> int:
        raw = self.context.get(self._key(SUPPRESS_UNTIL_KEY))
        try:
            return int(raw) if raw else 0
        except ValueError:
            logger.warning(f"Ignoring corrupt suppression timestamp {raw!r}")
            return 0

    @property
    def reason(self) -> str:
        return self.context.get(self._key(SUPPRESS_REASON_KEY)) or ""

    def is_suppressed(self) -> bool:
        return self._now_ms() < self.until_ms

    def remaining_seconds(self) -> float:
        return max(0.0, (self.until_ms - self._now_ms()) / 1000)

    def clear(self):
        self.context.delete(self._key(SUPPRESS_UNTIL_KEY))
        self.context.delete(self._key(SUPPRESS_REASON_KEY))


class RunGuard:
    """
    At most one pass per account across threads and processes.

    The guard is a lease row taken inside ``BEGIN IMMEDIATE``, which SQLite
    serialises between writers. A lease older than ``lease_seconds`` belongs
    to a process that died mid-pass and may be taken over.
    """

    def __init__(self, context: SyncContext, account: str, lease_seconds: int = 3600):
        self.context = context
        self.account = account
        self.lease_seconds = lease_seconds
        self.owner = uuid.uuid4().hex
        self._lock = threading.Lock()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        with self._lock, closing(self.context.connect()) as conn:
            if self._held:
                return False
            now = int(self.context.clock())
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT owner, acquired_at FROM run_lease WHERE account = ?",
                    (self.account,),
                ).fetchone()
                if row is not None and now - row["acquired_at"] < self.lease_seconds:
                    conn.execute("ROLLBACK")
                    return False
                if row is not None:
                    logger.warning(
                        f"Taking over stale run lease for {self.account} "
                        f"(held by {row['owner']} since {row['acquired_at']})"
                    )
                conn.execute(
                    "INSERT OR REPLACE INTO run_lease (account, owner, acquired_at) "
                    "VALUES (?, ?, ?)",
                    (self.account, self.owner, now),
                )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            self._held = True
            return True

    def release(self):
        with self._lock, closing(self.context.connect()) as conn:
            conn.execute(
                "DELETE FROM run_lease WHERE account = ? AND owner = ?",
                (self.account, self.owner),
            )
            self._held = False

    def is_locked(self) -> bool:
        """True when any live (non-stale) lease exists for the account."""
        with closing(self.context.connect()) as conn:
            row = conn.execute(
                "SELECT acquired_at FROM run_lease WHERE account = ?", (self.account,)
            ).fetchone()
        return row is not None and int(self.context.clock()) - row["acquired_at"] < self.lease_seconds

    @contextmanager
    def hold(self) -> Iterator["RunGuard"]:
        """Acquire for the duration of the block; raises ConcurrencyConflict if busy."""
        if not self.try_acquire():
            raise ConcurrencyConflict(f"A sync pass for {self.account} is already running")
        try:
            yield self
        finally:
            self.release()


class CancellationToken:
    """Cooperative cancellation checked between item operations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise SyncCancelled("Sync pass cancelled")
