"""
Identity resolution and fallback-identifier repair.
"""

import logging
import sqlite3

from kerio_sync.identifiers import Canonical
from kerio_sync.identifiers import Fallback
from kerio_sync.identifiers import Identifier
from kerio_sync.identifiers import Secondary
from kerio_sync.identifiers import classify
from kerio_sync.models import LocalCollection
from kerio_sync.models import LocalItem
from kerio_sync.results import Err
from kerio_sync.results import ErrorKind
from kerio_sync.results import Ok
from kerio_sync.results import Result
from kerio_sync.store import LocalStore
from kerio_sync.sync.gateway import RemoteGateway


class IdentityResolver:
    """Maps secondary/fallback identifiers to canonical occurrence ids."""

    def __init__(self, gateway: RemoteGateway, store: LocalStore, logger=None):
        self.gateway = gateway
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def resolve(self, collection_remote_id: str, ident: Identifier, approx_start=None) -> Result:
        """
        Resolve ``ident`` to a canonical id.

        Canonical input is returned unchanged without a remote call. Any
        failure other than an auth error comes back as IDENTITY_UNRESOLVED so
        callers defer instead of failing.
        """
        if isinstance(ident, Canonical):
            return Ok(ident.id)

        if isinstance(ident, Fallback):
            secondary_id = ident.secondary_id
            approx_start = ident.approx_start or approx_start
        else:
            secondary_id = ident.id

        result = self.gateway.resolve_canonical_id(collection_remote_id, secondary_id, approx_start)
        if result.ok:
            return result
        if result.kind is ErrorKind.AUTH:
            return result
        return Err(ErrorKind.IDENTITY_UNRESOLVED, f"{secondary_id}: {result}")

    def repair(self, collection: LocalCollection, item: LocalItem) -> Result:
        """
        Rewrite a local item's stored identifier to its canonical form.

        Leaves ``dirty`` untouched so a pending update is still pushed.
        """
        ident = classify(item)
        if ident is None:
            return Err(ErrorKind.IDENTITY_UNRESOLVED, f"item {item.local_id} has no identifier")
        if isinstance(ident, Canonical):
            return Ok(ident.id)

        result = self.resolve(collection.remote_id, ident, approx_start=item.start)
        if not result.ok:
            return result

        canonical_id = result.value
        secondary_id = ident.secondary_id if isinstance(ident, Fallback) else ident.id
        try:
            duplicate = self.store.find_by_sync_id(item.collection_id, canonical_id)
            if duplicate is not None and duplicate.local_id != item.local_id:
                # A previous pull inserted the occurrence as a separate row.
                self.logger.warning(
                    f"Dropping duplicate local item {duplicate.local_id} for {canonical_id}, "
                    f"keeping {item.local_id}"
                )
                self.store.delete_item(duplicate.local_id, caller_is_sync_adapter=True)
            self.store.set_identifiers(
                item.local_id, sync_id=canonical_id, secondary_id=secondary_id
            )
        except sqlite3.Error as e:
            return Err(ErrorKind.TRANSIENT_IO, f"store update for item {item.local_id}: {e}")

        self.logger.info(f"Repaired identifier of item {item.local_id}: {ident.stored} -> {canonical_id}")
        item.sync_id = canonical_id
        item.secondary_id = secondary_id
        return Ok(canonical_id)


def pending_secondary_id(item: LocalItem) -> str | None:
    """Secondary id of an item still waiting for resolution, else None."""
    ident = classify(item)
    if isinstance(ident, Fallback):
        return ident.secondary_id
    if isinstance(ident, Secondary):
        return ident.id
    return None
