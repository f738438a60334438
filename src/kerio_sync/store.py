"""
SQLite-backed local store for collections and their items.

Every mutating call is its own transaction. Writes made by the sync engine
pass ``caller_is_sync_adapter=True``: they never mark rows dirty and never
notify change listeners. Writes made on behalf of the user do both.
"""

import json
import sqlite3
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from kerio_sync.dates import from_millis
from kerio_sync.dates import to_millis
from kerio_sync.models import AccessLevel
from kerio_sync.models import ItemKind
from kerio_sync.models import LocalCollection
from kerio_sync.models import LocalItem

ChangeListener = Callable[[int], None]

_UNSET = object()


class LocalStore:
    """Local calendar/contacts database for one account."""

    def __init__(self, db_path: Path, account: str):
        self.db_path = db_path
        self.account = account
        self.conn: sqlite3.Connection | None = None
        self._listeners: list[ChangeListener] = []

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database and create the tables if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), timeout=30)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS collections (
                local_id INTEGER PRIMARY KEY AUTOINCREMENT,
                account TEXT NOT NULL,
                kind TEXT NOT NULL,
                remote_id TEXT,
                display_name TEXT NOT NULL,
                access_level INTEGER NOT NULL,
                visible INTEGER NOT NULL DEFAULT 1,
                sync_enabled INTEGER NOT NULL DEFAULT 1,
                color INTEGER,
                UNIQUE(account, kind, remote_id)
            );
            CREATE TABLE IF NOT EXISTS items (
                local_id INTEGER PRIMARY KEY AUTOINCREMENT,
                collection_id INTEGER NOT NULL
                    REFERENCES collections(local_id) ON DELETE CASCADE,
                kind TEXT NOT NULL,
                sync_id TEXT,
                secondary_id TEXT,
                last_known_remote_modified INTEGER NOT NULL DEFAULT 0,
                dirty INTEGER NOT NULL DEFAULT 0,
                deleted INTEGER NOT NULL DEFAULT 0,
                fields TEXT NOT NULL DEFAULT '{}',
                start_ms INTEGER,
                end_ms INTEGER,
                all_day INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL,
                UNIQUE(collection_id, sync_id)
            );
            CREATE INDEX IF NOT EXISTS items_secondary
                ON items(collection_id, secondary_id);
        """)
        self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------ #
    # Change notification                                                  #
    # ------------------------------------------------------------------ #

    def add_change_listener(self, listener: ChangeListener):
        """Register a callback fired with the collection id after user writes."""
        self._listeners.append(listener)

    def _notify(self, collection_id: int, caller_is_sync_adapter: bool):
        if caller_is_sync_adapter:
            return
        for listener in list(self._listeners):
            listener(collection_id)

    # ------------------------------------------------------------------ #
    # Collections                                                          #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_collection(row: sqlite3.Row) -> LocalCollection:
        return LocalCollection(
            local_id=row["local_id"],
            account=row["account"],
            kind=ItemKind(row["kind"]),
            remote_id=row["remote_id"],
            display_name=row["display_name"],
            access_level=AccessLevel(row["access_level"]),
            visible=bool(row["visible"]),
            sync_enabled=bool(row["sync_enabled"]),
            color=row["color"],
        )

    def list_collections(self, kind: ItemKind | None = None) -> list[LocalCollection]:
        if kind is None:
            cursor = self.conn.execute(
                "SELECT * FROM collections WHERE account = ? ORDER BY local_id",
                (self.account,),
            )
        else:
            cursor = self.conn.execute(
                "SELECT * FROM collections WHERE account = ? AND kind = ? ORDER BY local_id",
                (self.account, kind.value),
            )
        return [self._row_to_collection(row) for row in cursor.fetchall()]

    def get_collection(self, local_id: int) -> LocalCollection | None:
        row = self.conn.execute(
            "SELECT * FROM collections WHERE local_id = ? AND account = ?",
            (local_id, self.account),
        ).fetchone()
        return self._row_to_collection(row) if row else None

    def insert_collection(
        self,
        kind: ItemKind,
        remote_id: str | None,
        display_name: str,
        access_level: AccessLevel,
        visible: bool = True,
        sync_enabled: bool = True,
        color: int | None = None,
    ) -> LocalCollection:
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO collections "
                "(account, kind, remote_id, display_name, access_level, "
                " visible, sync_enabled, color) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    self.account,
                    kind.value,
                    remote_id,
                    display_name,
                    int(access_level),
                    int(visible),
                    int(sync_enabled),
                    color,
                ),
            )
        return self.get_collection(cursor.lastrowid)

    def update_collection_identity(
        self, local_id: int, display_name: str, access_level: AccessLevel
    ):
        """Refresh server-owned fields only. User settings are never touched here."""
        with self.conn:
            self.conn.execute(
                "UPDATE collections SET display_name = ?, access_level = ? "
                "WHERE local_id = ? AND account = ?",
                (display_name, int(access_level), local_id, self.account),
            )

    def set_collection_user_settings(
        self,
        local_id: int,
        visible: bool | None = None,
        sync_enabled: bool | None = None,
        color=_UNSET,
    ):
        """Apply user-owned collection settings (UI side)."""
        assignments = []
        params: list = []
        if visible is not None:
            assignments.append("visible = ?")
            params.append(int(visible))
        if sync_enabled is not None:
            assignments.append("sync_enabled = ?")
            params.append(int(sync_enabled))
        if color is not _UNSET:
            assignments.append("color = ?")
            params.append(color)
        if not assignments:
            return
        params.extend([local_id, self.account])
        with self.conn:
            self.conn.execute(
                f"UPDATE collections SET {', '.join(assignments)} "
                "WHERE local_id = ? AND account = ?",
                params,
            )

    def deactivate_collection(self, local_id: int):
        """Hide and stop syncing a collection without deleting it or its items."""
        with self.conn:
            self.conn.execute(
                "UPDATE collections SET visible = 0, sync_enabled = 0 "
                "WHERE local_id = ? AND account = ?",
                (local_id, self.account),
            )

    # ------------------------------------------------------------------ #
    # Items                                                                #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> LocalItem:
        return LocalItem(
            local_id=row["local_id"],
            collection_id=row["collection_id"],
            kind=ItemKind(row["kind"]),
            sync_id=row["sync_id"],
            secondary_id=row["secondary_id"],
            last_known_remote_modified=row["last_known_remote_modified"],
            dirty=bool(row["dirty"]),
            deleted=bool(row["deleted"]),
            fields=json.loads(row["fields"] or "{}"),
            start=from_millis(row["start_ms"]),
            end=from_millis(row["end_ms"]),
            all_day=bool(row["all_day"]),
        )

    def list_items(self, collection_id: int, include_deleted: bool = True) -> list[LocalItem]:
        sql = "SELECT * FROM items WHERE collection_id = ?"
        if not include_deleted:
            sql += " AND deleted = 0"
        cursor = self.conn.execute(sql + " ORDER BY local_id", (collection_id,))
        return [self._row_to_item(row) for row in cursor.fetchall()]

    def list_tombstones(self, collection_id: int) -> list[LocalItem]:
        cursor = self.conn.execute(
            "SELECT * FROM items WHERE collection_id = ? AND deleted = 1 ORDER BY local_id",
            (collection_id,),
        )
        return [self._row_to_item(row) for row in cursor.fetchall()]

    def list_dirty(self, collection_id: int) -> list[LocalItem]:
        """Dirty, non-deleted items (pending create or update)."""
        cursor = self.conn.execute(
            "SELECT * FROM items WHERE collection_id = ? AND dirty = 1 AND deleted = 0 "
            "ORDER BY local_id",
            (collection_id,),
        )
        return [self._row_to_item(row) for row in cursor.fetchall()]

    def get_item(self, local_id: int) -> LocalItem | None:
        row = self.conn.execute("SELECT * FROM items WHERE local_id = ?", (local_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def find_by_sync_id(self, collection_id: int, sync_id: str) -> LocalItem | None:
        row = self.conn.execute(
            "SELECT * FROM items WHERE collection_id = ? AND sync_id = ? LIMIT 1",
            (collection_id, sync_id),
        ).fetchone()
        return self._row_to_item(row) if row else None

    def find_by_secondary_id(self, collection_id: int, secondary_id: str) -> list[LocalItem]:
        cursor = self.conn.execute(
            "SELECT * FROM items WHERE collection_id = ? AND secondary_id = ? ORDER BY local_id",
            (collection_id, secondary_id),
        )
        return [self._row_to_item(row) for row in cursor.fetchall()]

    def insert_item(
        self,
        collection_id: int,
        kind: ItemKind,
        fields: dict,
        start: datetime | None = None,
        end: datetime | None = None,
        all_day: bool = False,
        sync_id: str | None = None,
        secondary_id: str | None = None,
        last_known_remote_modified: int = 0,
        *,
        caller_is_sync_adapter: bool = False,
    ) -> LocalItem:
        """
        Insert an item. User inserts are dirty (pending push-create); sync
        inserts are clean.
        """
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO items "
                "(collection_id, kind, sync_id, secondary_id, last_known_remote_modified, "
                " dirty, deleted, fields, start_ms, end_ms, all_day, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)",
                (
                    collection_id,
                    kind.value,
                    sync_id,
                    secondary_id,
                    last_known_remote_modified,
                    int(not caller_is_sync_adapter),
                    json.dumps(fields, sort_keys=True),
                    to_millis(start) if start else None,
                    to_millis(end) if end else None,
                    int(all_day),
                    int(time.time()),
                ),
            )
        self._notify(collection_id, caller_is_sync_adapter)
        return self.get_item(cursor.lastrowid)

    def update_item(
        self,
        local_id: int,
        fields: dict,
        start: datetime | None = None,
        end: datetime | None = None,
        all_day: bool = False,
        last_known_remote_modified: int | None = None,
        *,
        caller_is_sync_adapter: bool = False,
    ):
        """
        Replace an item's content.

        User edits mark the row dirty. Sync writes store the server's version,
        so the row ends up clean.
        """
        item = self.get_item(local_id)
        if item is None:
            return
        lkm = item.last_known_remote_modified
        if last_known_remote_modified is not None:
            lkm = last_known_remote_modified
        with self.conn:
            self.conn.execute(
                "UPDATE items SET fields = ?, start_ms = ?, end_ms = ?, all_day = ?, "
                "last_known_remote_modified = ?, dirty = ?, updated_at = ? "
                "WHERE local_id = ?",
                (
                    json.dumps(fields, sort_keys=True),
                    to_millis(start) if start else None,
                    to_millis(end) if end else None,
                    int(all_day),
                    lkm,
                    int(not caller_is_sync_adapter),
                    int(time.time()),
                    local_id,
                ),
            )
        self._notify(item.collection_id, caller_is_sync_adapter)

    def set_identifiers(self, local_id: int, sync_id=_UNSET, secondary_id=_UNSET):
        """Sync-adapter only: rewrite the identifier columns, leaving ``dirty`` alone."""
        assignments = []
        params: list = []
        if sync_id is not _UNSET:
            assignments.append("sync_id = ?")
            params.append(sync_id)
        if secondary_id is not _UNSET:
            assignments.append("secondary_id = ?")
            params.append(secondary_id)
        if not assignments:
            return
        params.append(local_id)
        with self.conn:
            self.conn.execute(
                f"UPDATE items SET {', '.join(assignments)} WHERE local_id = ?", params
            )

    def mark_clean(self, local_id: int, last_known_remote_modified: int | None = None):
        """Sync-adapter only: clear ``dirty`` after a successful push."""
        with self.conn:
            if last_known_remote_modified is None:
                self.conn.execute("UPDATE items SET dirty = 0 WHERE local_id = ?", (local_id,))
            else:
                self.conn.execute(
                    "UPDATE items SET dirty = 0, last_known_remote_modified = ? "
                    "WHERE local_id = ?",
                    (last_known_remote_modified, local_id),
                )

    def delete_item(self, local_id: int, *, caller_is_sync_adapter: bool = False):
        """
        Delete an item.

        Sync-adapter deletes purge the row. A user delete of an item the
        server knows about leaves a tombstone for the next push; an item
        that was never pushed is removed outright.
        """
        item = self.get_item(local_id)
        if item is None:
            return
        with self.conn:
            if caller_is_sync_adapter or not (item.sync_id or item.secondary_id):
                self.conn.execute("DELETE FROM items WHERE local_id = ?", (local_id,))
            else:
                self.conn.execute(
                    "UPDATE items SET deleted = 1, dirty = 1, updated_at = ? WHERE local_id = ?",
                    (int(time.time()), local_id),
                )
        self._notify(item.collection_id, caller_is_sync_adapter)

    # ------------------------------------------------------------------ #
    # Reporting                                                            #
    # ------------------------------------------------------------------ #

    def collection_counts(self) -> dict[int, dict[str, int]]:
        """Per-collection item, dirty and tombstone counts for this account."""
        cursor = self.conn.execute(
            """
            SELECT c.local_id AS local_id,
                   COUNT(i.local_id) AS items,
                   COALESCE(SUM(i.dirty AND NOT i.deleted), 0) AS dirty,
                   COALESCE(SUM(i.deleted), 0) AS tombstones
            FROM collections c
            LEFT JOIN items i ON i.collection_id = c.local_id
            WHERE c.account = ?
            GROUP BY c.local_id
            """,
            (self.account,),
        )
        return {
            row["local_id"]: {
                "items": row["items"],
                "dirty": row["dirty"],
                "tombstones": row["tombstones"],
            }
            for row in cursor.fetchall()
        }
