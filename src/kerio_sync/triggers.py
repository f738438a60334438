"""
Trigger source: decides whether an incoming signal runs a sync pass.
"""

import logging
from collections.abc import Callable

from kerio_sync.context import ChangeSuppressor
from kerio_sync.context import SyncContext
from kerio_sync.models import SyncPassResult

logger = logging.getLogger(__name__)

PassRunner = Callable[[str], SyncPassResult]

PENDING_AT_KEY = "pass_requested_at_ms"
PENDING_REASON_KEY = "pass_requested_reason"


class ChangeTrigger:
    """
    Entry point for local-change observers, manual requests and deferred
    "sync again soon" requests.

    Local-change signals are dropped while the suppressor window is open;
    explicit requests always run.
    """

    def __init__(
        self,
        run_pass: PassRunner,
        suppressor: ChangeSuppressor,
        context: SyncContext,
        scope: str = "",
    ):
        self.run_pass = run_pass
        self.suppressor = suppressor
        self.context = context
        self._prefix = f"{scope}:" if scope else ""

    def on_local_change(self, collection_id: int | None = None) -> SyncPassResult | None:
        """Handle a change notification from the local store."""
        if self.suppressor.is_suppressed():
            logger.debug(
                f"Ignoring local change (collection {collection_id}): suppressed for another "
                f"{self.suppressor.remaining_seconds():.1f}s ({self.suppressor.reason})"
            )
            return None
        logger.info(f"Local change detected (collection {collection_id}), starting sync")
        return self.run_pass("local-change")

    def request_sync(self, reason: str = "manual") -> SyncPassResult:
        return self.run_pass(reason)

    def request_pass_soon(self, reason: str, delay_seconds: float = 0):
        """Record that a pass should run once ``delay_seconds`` have elapsed."""
        due_ms = int((self.context.clock() + delay_seconds) * 1000)
        self.context.set(self._prefix + PENDING_AT_KEY, str(due_ms))
        self.context.set(self._prefix + PENDING_REASON_KEY, reason)
        logger.debug(f"Pass requested in {delay_seconds}s ({reason})")

    def pending_request(self) -> str | None:
        """Reason of a recorded request that is due now, else None."""
        raw = self.context.get(self._prefix + PENDING_AT_KEY)
        if not raw:
            return None
        if int(self.context.clock() * 1000) < int(raw):
            return None
        return self.context.get(self._prefix + PENDING_REASON_KEY) or "requested"

    def run_pending(self) -> SyncPassResult | None:
        """Run a due request (if any) and clear it."""
        reason = self.pending_request()
        if reason is None:
            return None
        self.context.delete(self._prefix + PENDING_AT_KEY)
        self.context.delete(self._prefix + PENDING_REASON_KEY)
        return self.run_pass(reason)
