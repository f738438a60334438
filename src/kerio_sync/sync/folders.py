"""
Collection reconciliation: remote folders -> local collections.
"""

import sqlite3

from kerio_sync.models import AccessLevel
from kerio_sync.models import ItemKind
from kerio_sync.models import RemoteCollection
from kerio_sync.models import SyncPassResult
from kerio_sync.store import LocalStore


def parse_color(value: str | None) -> int | None:
    """``#RRGGBB`` (or ``RRGGBB``) to an opaque ARGB integer; anything else -> None."""
    if not value:
        return None
    digits = value.strip().lstrip("#")
    if len(digits) != 6:
        return None
    try:
        return 0xFF000000 | int(digits, 16)
    except ValueError:
        return None


class CollectionReconciler:
    """
    Creates, refreshes and deactivates local collections.

    Only identity, display name and access level are ever refreshed.
    ``visible``, ``sync_enabled`` and ``color`` are set once, on insert.
    """

    def __init__(self, store: LocalStore, stats: SyncPassResult, logger):
        self.store = store
        self.stats = stats
        self.logger = logger

    def reconcile(
        self, remote_collections: list[RemoteCollection], kind: ItemKind = ItemKind.EVENT
    ) -> dict[str, int]:
        """Return ``{remote_id: local_id}`` for every remote collection handled."""
        local_by_remote = {
            c.remote_id: c for c in self.store.list_collections(kind) if c.remote_id
        }
        mapping: dict[str, int] = {}
        seen: set[str] = set()

        for remote in remote_collections:
            seen.add(remote.id)
            access = AccessLevel.READ if remote.read_only else AccessLevel.OWNER
            existing = local_by_remote.get(remote.id)
            try:
                if existing is None:
                    created = self.store.insert_collection(
                        kind,
                        remote.id,
                        remote.display_name,
                        access,
                        visible=True,
                        sync_enabled=True,
                        color=parse_color(remote.color),
                    )
                    mapping[remote.id] = created.local_id
                    self.logger.info(
                        f"Added {kind.value} collection '{remote.display_name}' "
                        f"({'read-only' if remote.read_only else 'writable'})"
                    )
                    continue

                mapping[remote.id] = existing.local_id
                if (
                    existing.display_name != remote.display_name
                    or existing.access_level != access
                ):
                    self.store.update_collection_identity(
                        existing.local_id, remote.display_name, access
                    )
                    self.logger.info(
                        f"Updated {kind.value} collection '{remote.display_name}' "
                        f"(access {access.name})"
                    )
                else:
                    self.logger.debug(f"Collection '{remote.display_name}' unchanged")
            except sqlite3.Error as e:
                self.logger.error(f"Failed to store collection {remote.id}: {e}")
                self.stats.io_failures += 1

        if not remote_collections:
            # An empty listing never deactivates anything.
            if local_by_remote:
                self.logger.warning(
                    f"Server listed no {kind.value} collections; keeping local ones active"
                )
            return mapping

        for remote_id, local in local_by_remote.items():
            if remote_id in seen or not (local.visible or local.sync_enabled):
                continue
            try:
                self.store.deactivate_collection(local.local_id)
                self.logger.info(
                    f"Deactivated {kind.value} collection '{local.display_name}' "
                    f"(no longer on server)"
                )
            except sqlite3.Error as e:
                self.logger.error(f"Failed to deactivate collection {local.local_id}: {e}")
                self.stats.io_failures += 1

        return mapping
