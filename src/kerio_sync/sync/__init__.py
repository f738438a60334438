"""
SyncPassOrchestrator — sequences one pass and delegates to sync submodules.
"""

import logging
import sqlite3
from datetime import datetime

from kerio_sync.context import CancellationToken
from kerio_sync.context import ChangeSuppressor
from kerio_sync.context import RunGuard
from kerio_sync.context import SyncContext
from kerio_sync.models import AuthFailure
from kerio_sync.models import SyncCancelled
from kerio_sync.models import SyncConfig
from kerio_sync.models import SyncPassResult
from kerio_sync.results import record_error
from kerio_sync.store import LocalStore
from kerio_sync.sync.folders import CollectionReconciler
from kerio_sync.sync.gateway import RemoteGateway
from kerio_sync.sync.gateway import raise_for_auth
from kerio_sync.sync.identity import IdentityResolver
from kerio_sync.sync.items import ItemReconciler


class SyncPassOrchestrator:
    """Main synchronization engine for one account."""

    def __init__(
        self,
        config: SyncConfig,
        client,
        store: LocalStore,
        context: SyncContext,
        cancel: CancellationToken | None = None,
        now: datetime | None = None,
    ):
        self.config = config
        self.store = store
        self.gateway = RemoteGateway(client)
        self.cancel = cancel or CancellationToken()
        self.now = now
        self.logger = logging.getLogger(__name__)
        self.suppressor = ChangeSuppressor(context, scope=config.account)
        self.guard = RunGuard(context, config.account, config.lease_seconds)

    def run(self, reason: str = "manual") -> SyncPassResult:
        """
        Execute one pass.

        A pass that finds the run guard taken returns immediately with
        ``skipped=True``. Cancellation and auth failures end the pass early;
        the suppressor is re-armed and the guard released on every path.
        """
        stats = SyncPassResult(reason=reason)
        if not self.guard.try_acquire():
            self.logger.info(f"Sync for {self.config.account} already running, skipping ({reason})")
            stats.skipped = True
            return stats

        try:
            self.suppressor.suppress_for(self.config.suppress_start_seconds, f"sync:{reason}")
            try:
                self._run_pass(stats)
            except AuthFailure as e:
                stats.auth_failures += 1
                self.logger.error(f"Authentication failed, aborting pass: {e}")
            except SyncCancelled:
                stats.cancelled = True
                self.logger.warning("Sync pass cancelled")
            finally:
                self.suppressor.suppress_for(self.config.suppress_end_seconds, f"sync-end:{reason}")
                logout = self.gateway.logout()
                if not logout.ok:
                    self.logger.debug(f"Logout failed: {logout}")
        finally:
            self.guard.release()

        self.logger.info(f"Sync pass ({reason}) finished: {stats.summary()}")
        return stats

    def _run_pass(self, stats: SyncPassResult):
        self.logger.info(f"Connecting to {self.config.server_url} as {self.config.username}...")
        login = self.gateway.login()
        if not login.ok:
            raise_for_auth(login)
            record_error(stats, login)
            self.logger.error(f"Could not reach {self.config.server_url}: {login}")
            return

        resolver = IdentityResolver(self.gateway, self.store, self.logger)
        folders = CollectionReconciler(self.store, stats, self.logger)
        items = ItemReconciler(
            self.config,
            stats,
            self.logger,
            self.gateway,
            self.store,
            resolver=resolver,
            cancel=self.cancel,
            now=self.now,
        )

        for kind in self.config.kinds:
            self.cancel.raise_if_cancelled()
            listed = self.gateway.list_collections(kind)
            if not listed.ok:
                raise_for_auth(listed)
                record_error(stats, listed)
                self.logger.error(f"Could not list {kind.value} collections: {listed}")
                continue

            folders.reconcile(listed.value, kind)

            for collection in self.store.list_collections(kind):
                if not collection.remote_id:
                    continue
                if not collection.sync_enabled:
                    self.logger.debug(f"Skipping '{collection.display_name}' (sync disabled)")
                    continue
                self.cancel.raise_if_cancelled()
                self.logger.info(f"Syncing {kind.value} collection '{collection.display_name}'")
                try:
                    items.reconcile(collection)
                except sqlite3.Error as e:
                    stats.io_failures += 1
                    self.logger.error(f"Local store error in '{collection.display_name}': {e}")
