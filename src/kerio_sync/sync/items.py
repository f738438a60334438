"""
Item reconciliation for one collection: repair, push, then pull.

Push runs before pull so that a local edit is on the server before the
full-window fetch that could otherwise overwrite it. Every item is handled
on its own; a failure is counted and the loop moves on. Only auth errors
escape (as AuthFailure) and abort the pass.
"""

import sqlite3
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from kerio_sync.context import CancellationToken
from kerio_sync.dates import as_utc
from kerio_sync.dates import in_fetch_window
from kerio_sync.dates import to_local_range
from kerio_sync.dates import to_millis
from kerio_sync.dates import to_remote_range
from kerio_sync.identifiers import Canonical
from kerio_sync.identifiers import Secondary
from kerio_sync.identifiers import classify
from kerio_sync.identifiers import make_fallback
from kerio_sync.identifiers import needs_repair
from kerio_sync.models import ItemKind
from kerio_sync.models import LocalCollection
from kerio_sync.models import LocalItem
from kerio_sync.models import ParseFailure
from kerio_sync.models import RemoteItem
from kerio_sync.models import RemoteRange
from kerio_sync.models import SyncConfig
from kerio_sync.models import SyncPassResult
from kerio_sync.results import Err
from kerio_sync.results import ErrorKind
from kerio_sync.results import record_error
from kerio_sync.store import LocalStore
from kerio_sync.sync.gateway import RemoteGateway
from kerio_sync.sync.gateway import raise_for_auth
from kerio_sync.sync.identity import IdentityResolver
from kerio_sync.sync.identity import pending_secondary_id


def sync_window(config: SyncConfig, now: datetime | None = None) -> tuple[datetime, datetime]:
    """The full-window fetch range around ``now``."""
    now = as_utc(now) if now else datetime.now(timezone.utc)
    return (
        now - timedelta(days=config.past_window_days),
        now + timedelta(days=config.future_window_days),
    )


def local_remote_range(item: LocalItem) -> RemoteRange | None:
    """Server range for a local item; None for contacts."""
    if item.kind is ItemKind.CONTACT:
        return None
    if item.start is None:
        raise ParseFailure(f"item {item.local_id} has no start")
    return to_remote_range(item.start, item.end, item.all_day)


def remote_content(remote: RemoteItem) -> tuple[dict, datetime | None, datetime | None, bool]:
    """``(fields, start, end, all_day)`` of a remote item in local terms."""
    if remote.kind is ItemKind.CONTACT or remote.range is None:
        return dict(remote.fields), None, None, False
    start, end, all_day = to_local_range(remote.range)
    return dict(remote.fields), start, end, all_day


def content_differs(local: LocalItem, fields: dict, start, end, all_day: bool) -> bool:
    return (
        local.fields != fields
        or to_millis(local.start) != to_millis(start)
        or to_millis(local.end) != to_millis(end)
        or local.all_day != all_day
    )


class ItemReconciler:
    """Bidirectional reconciliation of the items in one collection."""

    def __init__(
        self,
        config: SyncConfig,
        stats: SyncPassResult,
        logger,
        gateway: RemoteGateway,
        store: LocalStore,
        resolver: IdentityResolver | None = None,
        cancel: CancellationToken | None = None,
        now: datetime | None = None,
    ):
        self.config = config
        self.stats = stats
        self.logger = logger
        self.gateway = gateway
        self.store = store
        self.resolver = resolver or IdentityResolver(gateway, store, logger)
        self.cancel = cancel or CancellationToken()
        self.now = now

    def reconcile(self, collection: LocalCollection):
        """Run all phases for ``collection``."""
        self.repair_identifiers(collection)
        if collection.read_only:
            self.logger.debug(f"'{collection.display_name}' is read-only, skipping push")
        else:
            self.push_deletes(collection)
            self.push_updates(collection)
            self.push_creates(collection)
        self.pull(collection)

    def _each(self, items: list[LocalItem], handler, collection: LocalCollection):
        for item in items:
            self.cancel.raise_if_cancelled()
            try:
                handler(collection, item)
            except sqlite3.Error as e:
                self.logger.error(f"Local store error on item {item.local_id}: {e}")
                self.stats.io_failures += 1

    def _fail(self, err: Err, message: str):
        raise_for_auth(err)
        record_error(self.stats, err)
        self.logger.error(f"{message}: {err}")

    # ------------------------------------------------------------------ #
    # Repair                                                               #
    # ------------------------------------------------------------------ #

    def repair_identifiers(self, collection: LocalCollection):
        """Try to turn every pending (secondary/fallback) id into a canonical one."""
        pending = [
            item
            for item in self.store.list_items(collection.local_id, include_deleted=False)
            if needs_repair(item)
        ]
        self._each(pending, self._repair_one, collection)

    def _repair_one(self, collection: LocalCollection, item: LocalItem):
        result = self.resolver.repair(collection, item)
        if result.ok:
            return
        raise_for_auth(result)
        record_error(self.stats, result)
        self.logger.warning(f"Item {item.local_id} still pending resolution: {result}")

    # ------------------------------------------------------------------ #
    # Push                                                                 #
    # ------------------------------------------------------------------ #

    def push_deletes(self, collection: LocalCollection):
        self._each(self.store.list_tombstones(collection.local_id), self._push_delete, collection)

    def _push_delete(self, collection: LocalCollection, item: LocalItem):
        ident = classify(item)
        if ident is None:
            self.store.delete_item(item.local_id, caller_is_sync_adapter=True)
            self.logger.debug(f"Purged never-pushed tombstone {item.local_id}")
            return

        if not isinstance(ident, Canonical):
            repaired = self.resolver.repair(collection, item)
            if not repaired.ok:
                raise_for_auth(repaired)
                record_error(self.stats, repaired)
                self.logger.warning(
                    f"Deferring delete of item {item.local_id}: {ident.stored} unresolved"
                )
                return
            ident = Canonical(repaired.value)

        result = self.gateway.delete_item(ident.id, item.kind)
        if result.ok:
            self.store.delete_item(item.local_id, caller_is_sync_adapter=True)
            self.stats.deleted += 1
            self.logger.info(f"[LOCAL→REMOTE] Deleted {ident.id}")
        elif result.kind is ErrorKind.NOT_FOUND:
            self.store.delete_item(item.local_id, caller_is_sync_adapter=True)
            self.logger.info(f"[LOCAL→REMOTE] {ident.id} already gone on server, purged tombstone")
        else:
            self._fail(result, f"Failed to delete {ident.id}")

    def push_updates(self, collection: LocalCollection):
        self._each(self.store.list_dirty(collection.local_id), self._push_update, collection)

    def _push_update(self, collection: LocalCollection, item: LocalItem):
        ident = classify(item)
        if ident is None:
            return  # pending create
        if not isinstance(ident, Canonical):
            self.logger.warning(
                f"Deferring update of item {item.local_id}: {ident.stored} not yet resolved"
            )
            return

        try:
            remote_range = local_remote_range(item)
        except ParseFailure as e:
            self._fail(Err(ErrorKind.PARSE, str(e)), f"Cannot push item {item.local_id}")
            return

        result = self.gateway.update_item(ident.id, item.kind, item.fields, remote_range)
        if result.ok:
            self.store.mark_clean(item.local_id)
            self.stats.updated += 1
            self.logger.info(f"[LOCAL→REMOTE] Updated {ident.id}")
        elif result.kind is ErrorKind.NOT_FOUND:
            self.logger.warning(
                f"{ident.id} was deleted on the server; local edit to item "
                f"{item.local_id} will be dropped by the pull"
            )
        else:
            self._fail(result, f"Failed to update {ident.id}")

    def push_creates(self, collection: LocalCollection):
        self._each(self.store.list_dirty(collection.local_id), self._push_create, collection)

    def _push_create(self, collection: LocalCollection, item: LocalItem):
        if classify(item) is not None:
            return

        try:
            remote_range = local_remote_range(item)
        except ParseFailure as e:
            self._fail(Err(ErrorKind.PARSE, str(e)), f"Cannot push item {item.local_id}")
            return

        result = self.gateway.create_item(
            collection.remote_id, item.kind, item.fields, remote_range
        )
        if not result.ok:
            self._fail(result, f"Failed to create item {item.local_id}")
            return
        new_id = result.value

        if item.kind is ItemKind.CONTACT:
            self.store.set_identifiers(item.local_id, sync_id=new_id)
            self.store.mark_clean(item.local_id)
            self.stats.inserted += 1
            self.logger.info(f"[LOCAL→REMOTE] Created {new_id}")
            return

        # Persist the parent id before anything else can fail.
        self.store.set_identifiers(item.local_id, secondary_id=new_id)
        self.store.mark_clean(item.local_id)
        self.stats.inserted += 1

        resolved = self.resolver.resolve(collection.remote_id, Secondary(new_id), item.start)
        if resolved.ok:
            self.store.set_identifiers(item.local_id, sync_id=resolved.value)
            self.logger.info(f"[LOCAL→REMOTE] Created {resolved.value} (event {new_id})")
            return

        raise_for_auth(resolved)
        fallback = make_fallback(new_id, item.start)
        self.store.set_identifiers(item.local_id, sync_id=fallback.stored)
        self.stats.deferred += 1
        self.logger.warning(
            f"[LOCAL→REMOTE] Created event {new_id}, occurrence id not resolved yet "
            f"({resolved}); stored {fallback.stored}"
        )

    # ------------------------------------------------------------------ #
    # Pull                                                                 #
    # ------------------------------------------------------------------ #

    def pull(self, collection: LocalCollection):
        """Fetch the full window and apply remote inserts, updates and deletes."""
        window_start, window_end = sync_window(self.config, self.now)
        result = self.gateway.list_items(
            collection.remote_id, collection.kind, window_start, window_end
        )
        if not result.ok:
            self._fail(result, f"Skipping pull of '{collection.display_name}'")
            return

        listing = result.value
        for reason in listing.rejected:
            self.stats.parse_failures += 1
            self.logger.warning(f"Unreadable remote item in '{collection.display_name}': {reason}")
        if not listing.items:
            self.logger.debug(f"'{collection.display_name}': server returned no items")

        by_sync_id = {
            item.sync_id: item
            for item in self.store.list_items(collection.local_id)
            if item.sync_id
        }
        seen: set[str] = set()

        for remote in listing.items:
            self.cancel.raise_if_cancelled()
            if not remote.canonical_id:
                self.stats.parse_failures += 1
                self.logger.warning(
                    f"Skipping remote item without identifier in '{collection.display_name}'"
                )
                continue
            seen.add(remote.canonical_id)
            try:
                self._pull_one(collection, remote, by_sync_id)
            except ParseFailure as e:
                self.stats.parse_failures += 1
                self.logger.warning(f"Skipping {remote.canonical_id}: {e}")
            except sqlite3.Error as e:
                self.stats.io_failures += 1
                self.logger.error(f"Local store error on {remote.canonical_id}: {e}")

        for local in list(by_sync_id.values()):
            if local.sync_id in seen:
                continue
            self.cancel.raise_if_cancelled()
            try:
                self._drop_missing(local, window_start, window_end)
            except sqlite3.Error as e:
                self.stats.io_failures += 1
                self.logger.error(f"Local store error on item {local.local_id}: {e}")

    def _pull_one(self, collection: LocalCollection, remote: RemoteItem, by_sync_id: dict):
        fields, start, end, all_day = remote_content(remote)
        remote_ms = to_millis(remote.last_modified)

        local = by_sync_id.get(remote.canonical_id)
        if local is None and remote.secondary_id:
            local = self._adopt(collection, remote, by_sync_id)

        if local is None:
            self.store.insert_item(
                collection.local_id,
                remote.kind,
                fields,
                start,
                end,
                all_day,
                sync_id=remote.canonical_id,
                secondary_id=remote.secondary_id,
                last_known_remote_modified=remote_ms,
                caller_is_sync_adapter=True,
            )
            self.stats.inserted += 1
            self.logger.info(f"[REMOTE→LOCAL] Inserted {remote.canonical_id}")
            return

        if local.deleted:
            self.logger.debug(f"{remote.canonical_id} has a pending local delete, not pulling")
            return

        differs = content_differs(local, fields, start, end, all_day)
        if remote_ms > 0:
            apply = remote_ms > local.last_known_remote_modified
        else:
            # Unknown modification time: apply whenever the content differs.
            apply = differs

        if apply and differs:
            self.store.update_item(
                local.local_id,
                fields,
                start,
                end,
                all_day,
                last_known_remote_modified=remote_ms or None,
                caller_is_sync_adapter=True,
            )
            self.stats.updated += 1
            self.logger.info(f"[REMOTE→LOCAL] Updated {remote.canonical_id}")
        elif apply:
            self.store.mark_clean(local.local_id, last_known_remote_modified=remote_ms)
            self.logger.debug(f"{remote.canonical_id} touched on server, content unchanged")
        else:
            self.logger.debug(f"{remote.canonical_id} unchanged")

    def _adopt(
        self, collection: LocalCollection, remote: RemoteItem, by_sync_id: dict
    ) -> LocalItem | None:
        """Attach a pending local item to the occurrence it was created as."""
        candidates = [
            item
            for item in self.store.find_by_secondary_id(collection.local_id, remote.secondary_id)
            if pending_secondary_id(item) == remote.secondary_id
        ]
        if not candidates:
            return None

        target_ms = 0
        if remote.range is not None:
            target_ms = to_millis(to_local_range(remote.range)[0])
        local = min(candidates, key=lambda item: abs(to_millis(item.start) - target_ms))

        by_sync_id.pop(local.sync_id, None)
        self.store.set_identifiers(local.local_id, sync_id=remote.canonical_id)
        local.sync_id = remote.canonical_id
        by_sync_id[remote.canonical_id] = local
        self.logger.info(
            f"[REMOTE→LOCAL] Matched pending item {local.local_id} to {remote.canonical_id}"
        )
        return local

    def _drop_missing(self, local: LocalItem, window_start: datetime, window_end: datetime):
        """Remove a local item whose remote counterpart is gone."""
        if needs_repair(local):
            return  # pending resolution, never dropped
        if local.kind is ItemKind.EVENT and local.start is not None:
            span = to_remote_range(local.start, local.end, local.all_day)
            if not in_fetch_window(span, window_start, window_end):
                return  # the fetch could not have returned it, absence proves nothing

        self.store.delete_item(local.local_id, caller_is_sync_adapter=True)
        if local.deleted:
            self.logger.info(f"[REMOTE→LOCAL] {local.sync_id} gone on server, purged tombstone")
            return
        self.stats.deleted += 1
        self.logger.info(f"[REMOTE→LOCAL] Deleted {local.sync_id}")
