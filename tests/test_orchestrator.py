"""
Integration tests: a full pass through SyncPassOrchestrator.
"""

from dataclasses import replace

import pytest

from kerio_sync.context import CancellationToken
from kerio_sync.context import ChangeSuppressor
from kerio_sync.context import RunGuard
from kerio_sync.models import AuthFailure
from kerio_sync.models import ItemKind
from kerio_sync.models import TransientIOFailure
from kerio_sync.sync import SyncPassOrchestrator
from tests.conftest import ACCOUNT
from tests.conftest import NOW
from tests.conftest import utc
from tests.fake_client import FakeRemoteClient


def _server() -> FakeRemoteClient:
    fake = FakeRemoteClient()
    fake.add_collection("F1", "Work")
    fake.add_collection("F2", "Holidays", read_only=True)
    fake.add_event("F1", "keriostorage://occurrence/w1", utc(2025, 1, 20, 9), utc(2025, 1, 20, 10))
    fake.add_event("F2", "keriostorage://occurrence/h1", utc(2025, 12, 25), utc(2025, 12, 26), all_day=True)
    return fake


def _orchestrator(config, fake, store, context, cancel=None) -> SyncPassOrchestrator:
    return SyncPassOrchestrator(config, fake, store, context, cancel=cancel, now=NOW)


def _items(store, remote_id):
    col = next(c for c in store.list_collections() if c.remote_id == remote_id)
    return store.list_items(col.local_id)


class TestFullPass:
    def test_first_pass_creates_collections_and_items(self, sync_config, store, context):
        fake = _server()

        result = _orchestrator(sync_config, fake, store, context).run("boot")

        assert result.reason == "boot"
        assert (result.inserted, result.updated, result.deleted) == (2, 0, 0)
        assert not result.failed
        assert {c.remote_id for c in store.list_collections(ItemKind.EVENT)} == {"F1", "F2"}
        assert len(_items(store, "F1")) == 1
        assert len(_items(store, "F2")) == 1

    def test_repeated_pass_is_idempotent(self, sync_config, store, context):
        fake = _server()
        orch = _orchestrator(sync_config, fake, store, context)
        orch.run()

        result = orch.run()

        assert (result.inserted, result.updated, result.deleted) == (0, 0, 0)

    def test_guard_released_and_suppressor_rearmed(self, sync_config, store, context, clock):
        fake = _server()
        orch = _orchestrator(sync_config, fake, store, context)
        orch.run()

        assert not RunGuard(context, ACCOUNT).is_locked()
        suppressor = ChangeSuppressor(context, scope=ACCOUNT)
        assert suppressor.is_suppressed()
        assert suppressor.reason == "sync-end:manual"
        clock.advance(sync_config.suppress_end_seconds + 1)
        assert not suppressor.is_suppressed()

    def test_suppressor_is_armed_during_the_pass(self, sync_config, store, context):
        fake = _server()
        observed = []
        suppressor = ChangeSuppressor(context, scope=ACCOUNT)
        fake.on_list_items = lambda: observed.append(suppressor.is_suppressed())

        _orchestrator(sync_config, fake, store, context).run()

        assert observed and all(observed)

    def test_disabled_collection_is_skipped(self, sync_config, store, context):
        fake = _server()
        orch = _orchestrator(sync_config, fake, store, context)
        orch.run()
        f1 = next(c for c in store.list_collections() if c.remote_id == "F1")
        store.set_collection_user_settings(f1.local_id, sync_enabled=False)
        fake.add_event("F1", "keriostorage://occurrence/w2", utc(2025, 1, 21, 9), utc(2025, 1, 21, 10))

        result = orch.run()

        assert result.inserted == 0
        assert len(_items(store, "F1")) == 1

    def test_contacts_are_synced_when_enabled(self, sync_config, store, context):
        fake = _server()
        fake.add_collection("C1", "Contacts", kind=ItemKind.CONTACT)
        fake.add_contact("C1", "keriostorage://contact/7", commonName="Ann")
        config = replace(sync_config, sync_contacts=True)

        result = _orchestrator(config, fake, store, context).run()

        assert result.inserted == 3
        assert [c.remote_id for c in store.list_collections(ItemKind.CONTACT)] == ["C1"]


class TestFailures:
    def test_login_auth_failure_aborts(self, sync_config, store, context):
        fake = _server()
        fake.fail_auth()

        result = _orchestrator(sync_config, fake, store, context).run()

        assert result.auth_failures == 1
        assert result.failed
        assert store.list_collections() == []
        assert not RunGuard(context, ACCOUNT).is_locked()

    def test_auth_failure_mid_pass_stops_remaining_collections(self, sync_config, store, context):
        fake = _server()
        fake.fail("list_items", AuthFailure("session expired"))

        result = _orchestrator(sync_config, fake, store, context).run()

        assert result.auth_failures == 1
        assert _items(store, "F1") == []
        assert _items(store, "F2") == []

    def test_unreachable_server(self, sync_config, store, context):
        fake = _server()
        fake.fail("login", TransientIOFailure("connection refused"))

        result = _orchestrator(sync_config, fake, store, context).run()

        assert result.io_failures == 1
        assert result.auth_failures == 0
        assert store.list_collections() == []

    def test_collection_listing_failure_is_counted(self, sync_config, store, context):
        fake = _server()
        fake.fail("list_collections", TransientIOFailure("HTTP 502"))

        result = _orchestrator(sync_config, fake, store, context).run()

        assert result.io_failures == 1
        assert store.list_collections() == []

    def test_one_collection_failing_does_not_stop_the_next(self, sync_config, store, context):
        fake = _server()
        fake.fail("list_items", TransientIOFailure("HTTP 500"))

        result = _orchestrator(sync_config, fake, store, context).run()

        assert result.io_failures == 1
        assert _items(store, "F1") == []
        assert len(_items(store, "F2")) == 1

    def test_logout_failure_does_not_fail_the_pass(self, sync_config, store, context):
        fake = _server()
        fake.fail("logout", TransientIOFailure("connection reset"))

        result = _orchestrator(sync_config, fake, store, context).run()

        assert not result.failed
        assert result.inserted == 2
        assert ChangeSuppressor(context, scope=ACCOUNT).reason == "sync-end:manual"
        assert not RunGuard(context, ACCOUNT).is_locked()

    def test_suppressor_rearmed_even_if_logout_blows_up(self, sync_config, store, context):
        fake = _server()
        fake.fail("logout", RuntimeError("socket closed"))

        with pytest.raises(RuntimeError):
            _orchestrator(sync_config, fake, store, context).run()

        suppressor = ChangeSuppressor(context, scope=ACCOUNT)
        assert suppressor.is_suppressed()
        assert suppressor.reason == "sync-end:manual"
        assert not RunGuard(context, ACCOUNT).is_locked()


class TestConcurrencyAndCancellation:
    def test_busy_guard_skips_the_pass(self, sync_config, store, context):
        fake = _server()
        RunGuard(context, ACCOUNT).try_acquire()

        result = _orchestrator(sync_config, fake, store, context).run("timer")

        assert result.skipped
        assert fake.logins == 0
        assert store.list_collections() == []

    def test_cancelled_pass(self, sync_config, store, context):
        fake = _server()
        token = CancellationToken()
        token.cancel()

        result = _orchestrator(sync_config, fake, store, context, cancel=token).run()

        assert result.cancelled
        assert not result.failed
        assert not RunGuard(context, ACCOUNT).is_locked()
        assert ChangeSuppressor(context, scope=ACCOUNT).is_suppressed()
