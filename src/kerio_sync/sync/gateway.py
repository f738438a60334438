"""
Remote gateway: every transport call returns ``Ok | Err`` instead of raising.
"""

from datetime import datetime

from kerio_sync.models import AuthFailure
from kerio_sync.models import IdentityUnresolved
from kerio_sync.models import ItemKind
from kerio_sync.models import ParseFailure
from kerio_sync.models import RemoteItemNotFound
from kerio_sync.models import RemoteRange
from kerio_sync.models import TransientIOFailure
from kerio_sync.results import Err
from kerio_sync.results import ErrorKind
from kerio_sync.results import Ok
from kerio_sync.results import Result


def raise_for_auth(result: Result) -> Result:
    """Escalate an auth error to AuthFailure; pass anything else through."""
    if not result.ok and result.kind is ErrorKind.AUTH:
        raise AuthFailure(result.message or "Authentication failed")
    return result


class RemoteGateway:
    """Wraps a transport client (KerioApiClient or a test double)."""

    def __init__(self, client):
        self.client = client

    def _wrap(self, func, *args) -> Result:
        try:
            return Ok(func(*args))
        except AuthFailure as e:
            return Err(ErrorKind.AUTH, str(e))
        except RemoteItemNotFound as e:
            return Err(ErrorKind.NOT_FOUND, str(e))
        except ParseFailure as e:
            return Err(ErrorKind.PARSE, str(e))
        except IdentityUnresolved as e:
            return Err(ErrorKind.IDENTITY_UNRESOLVED, str(e))
        except TransientIOFailure as e:
            return Err(ErrorKind.TRANSIENT_IO, str(e))

    def login(self) -> Result:
        return self._wrap(self.client.login)

    def logout(self) -> Result:
        return self._wrap(self.client.logout)

    def list_collections(self, kind: ItemKind) -> Result:
        return self._wrap(self.client.list_collections, kind)

    def list_items(
        self, collection_id: str, kind: ItemKind, window_start: datetime, window_end: datetime
    ) -> Result:
        return self._wrap(self.client.list_items, collection_id, kind, window_start, window_end)

    def create_item(
        self, collection_id: str, kind: ItemKind, fields: dict, remote_range: RemoteRange | None
    ) -> Result:
        return self._wrap(self.client.create_item, collection_id, kind, fields, remote_range)

    def update_item(
        self, canonical_id: str, kind: ItemKind, fields: dict, remote_range: RemoteRange | None
    ) -> Result:
        return self._wrap(self.client.update_item, canonical_id, kind, fields, remote_range)

    def delete_item(self, canonical_id: str, kind: ItemKind) -> Result:
        return self._wrap(self.client.delete_item, canonical_id, kind)

    def resolve_canonical_id(
        self, collection_id: str, secondary_id: str, approx_start: datetime | None
    ) -> Result:
        """``Ok(canonical_id)`` or ``Err(IDENTITY_UNRESOLVED)`` when nothing matched."""
        result = self._wrap(
            self.client.resolve_canonical_id, collection_id, secondary_id, approx_start
        )
        if result.ok and not result.value:
            return Err(ErrorKind.IDENTITY_UNRESOLVED, f"No occurrence found for {secondary_id}")
        return result
