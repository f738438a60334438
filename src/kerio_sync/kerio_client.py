"""
Kerio Connect JSON-RPC client (calendars and contacts).

Raises the kerio_sync exception taxonomy; it never returns partial results
silently. Converting failures into per-item outcomes is the gateway's job.
"""

import itertools
import logging
from datetime import datetime
from datetime import timedelta

import requests

from kerio_sync.dates import WINDOW_END_SLACK
from kerio_sync.dates import format_kerio_utc
from kerio_sync.dates import parse_kerio_datetime
from kerio_sync.dates import to_millis
from kerio_sync.models import AuthFailure
from kerio_sync.models import IdentityUnresolved
from kerio_sync.models import ItemKind
from kerio_sync.models import ParseFailure
from kerio_sync.models import RemoteCollection
from kerio_sync.models import RemoteItem
from kerio_sync.models import RemoteItemNotFound
from kerio_sync.models import RemoteListing
from kerio_sync.models import RemoteRange
from kerio_sync.models import TransientIOFailure

logger = logging.getLogger(__name__)

APP_NAME = "kerio-sync"
APP_VERSION = "0.1.0"
JSONRPC_PATH = "/webmail/api/jsonrpc/"

FOLDER_TYPES = {ItemKind.EVENT: "FCalendar", ItemKind.CONTACT: "FContact"}

EVENT_FIELDS = ("summary", "description", "location")
CONTACT_FIELDS = ("commonName", "firstName", "middleName", "surName", "nickName")

OCCURRENCE_LIMIT = 1000
CONTACT_PAGE_SIZE = 200
RESOLVE_WINDOW = timedelta(hours=6)

# JSON-RPC error codes Kerio uses for a missing/expired session.
_AUTH_ERROR_CODES = {-32001, -32003}


def normalize_api_url(server_url: str) -> str:
    """
    Turn a bare host or webmail URL into the JSON-RPC endpoint.

    >>> normalize_api_url("mail.example.com")
    'https://mail.example.com/webmail/api/jsonrpc/'
    """
    url = server_url.strip()
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    url = url.rstrip("/")
    if "jsonrpc" not in url:
        url += JSONRPC_PATH
    elif not url.endswith("/"):
        url += "/"
    return url


class KerioRpcError(TransientIOFailure):
    """A JSON-RPC level error object returned by the server."""

    def __init__(self, message: str, code: int = 0):
        super().__init__(message)
        self.code = code


def _condition(field_name: str, comparator: str, value: str) -> dict:
    return {"fieldName": field_name, "comparator": comparator, "value": value}


def _is_not_found(message: str) -> bool:
    lowered = message.lower()
    return "not found" in lowered or "does not exist" in lowered


class KerioApiClient:
    """Session-holding JSON-RPC client for one account."""

    def __init__(
        self,
        server_url: str,
        username: str,
        password: str,
        session: requests.Session | None = None,
        verify: bool = True,
        timeout: float = 30,
    ):
        self.api_url = normalize_api_url(server_url)
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self.verify = verify
        self.timeout = timeout
        self.token: str | None = None
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------ #
    # Transport                                                            #
    # ------------------------------------------------------------------ #

    def call(self, method: str, params: dict | None = None) -> dict:
        """Send one JSON-RPC request and return its ``result`` object."""
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or {},
        }
        headers = {
            "Accept": "application/json-rpc",
            "Content-Type": "application/json-rpc; charset=UTF-8",
        }
        if self.token:
            headers["X-Token"] = self.token

        logger.debug(f"JSON-RPC {method} (id={body['id']})")
        try:
            resp = self.session.post(
                self.api_url,
                json=body,
                headers=headers,
                verify=self.verify,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientIOFailure(f"{method}: {e}") from e

        if resp.status_code in (401, 403):
            raise AuthFailure(f"{method}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise TransientIOFailure(f"{method}: HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise ParseFailure(f"{method}: response is not JSON") from e
        if not isinstance(payload, dict):
            raise ParseFailure(f"{method}: unexpected response shape")

        error = payload.get("error")
        if error:
            code = error.get("code", 0) if isinstance(error, dict) else 0
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if code in _AUTH_ERROR_CODES:
                raise AuthFailure(f"{method}: {message}")
            if _is_not_found(message):
                raise RemoteItemNotFound(f"{method}: {message}")
            raise KerioRpcError(f"{method}: JSON-RPC error {code}: {message}", code)

        result = payload.get("result")
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise ParseFailure(f"{method}: result is not an object")
        return result

    @staticmethod
    def _raise_batch_errors(method: str, result: dict):
        """Kerio batch calls report per-input failures in ``result.errors``."""
        for err in result.get("errors") or []:
            message = str(err.get("message", err)) if isinstance(err, dict) else str(err)
            if _is_not_found(message):
                raise RemoteItemNotFound(f"{method}: {message}")
            raise TransientIOFailure(f"{method}: {message}")

    # ------------------------------------------------------------------ #
    # Session                                                              #
    # ------------------------------------------------------------------ #

    def login(self):
        params = {
            "userName": self.username,
            "password": self.password,
            "application": {"name": APP_NAME, "vendor": APP_NAME, "version": APP_VERSION},
        }
        try:
            result = self.call("Session.login", params)
        except (KerioRpcError, RemoteItemNotFound) as e:
            # Kerio answers bad credentials with a generic JSON-RPC error.
            raise AuthFailure(f"Login rejected for {self.username}: {e}") from e
        token = result.get("token")
        if not token:
            raise AuthFailure(f"Login for {self.username} returned no session token")
        self.token = token
        logger.debug(f"Logged in as {self.username}")

    def logout(self):
        """Best-effort logout; failures are only logged."""
        if not self.token:
            return
        try:
            self.call("Session.logout")
        except (TransientIOFailure, AuthFailure, ParseFailure, RemoteItemNotFound) as e:
            logger.debug(f"Logout failed: {e}")
        finally:
            self.token = None

    def _ensure_logged_in(self):
        if not self.token:
            self.login()

    # ------------------------------------------------------------------ #
    # Folders                                                              #
    # ------------------------------------------------------------------ #

    def list_collections(self, kind: ItemKind = ItemKind.EVENT) -> list[RemoteCollection]:
        """Own folders plus public ones (best effort) of the requested kind."""
        self._ensure_logged_in()
        by_id: dict[str, RemoteCollection] = {}
        self._add_folders(self.call("Folders.get"), kind, by_id, public=False)
        try:
            public = self.call("Folders.getPublic")
        except (TransientIOFailure, ParseFailure, RemoteItemNotFound) as e:
            logger.info(f"Folders.getPublic not available: {e}")
        else:
            self._add_folders(public, kind, by_id, public=True)
        return list(by_id.values())

    def _add_folders(
        self, result: dict, kind: ItemKind, by_id: dict[str, RemoteCollection], public: bool
    ):
        for folder in result.get("list") or []:
            collection = self._folder_to_collection(folder, kind, public)
            if collection is None:
                continue
            existing = by_id.get(collection.id)
            if existing is None:
                by_id[collection.id] = collection
            else:
                # Writable through any listing means writable.
                existing.read_only = existing.read_only and collection.read_only
                existing.color = existing.color or collection.color

    def _folder_to_collection(
        self, folder: dict, kind: ItemKind, public: bool
    ) -> RemoteCollection | None:
        if not isinstance(folder, dict) or folder.get("type") != FOLDER_TYPES[kind]:
            return None
        folder_id = folder.get("id")
        if not folder_id:
            return None

        name = folder.get("name") or folder_id
        place = folder.get("placeType")
        is_public = public or place == "FPlacePublic"
        is_shared = place == "FPlacePeople" or bool(folder.get("isDelegated"))
        owner = folder.get("ownerName") or folder.get("owner") or self.username

        read_only = False
        rights = folder.get("rights")
        if isinstance(rights, dict):
            read_only = not any(
                rights.get(key) for key in ("modify", "modifyItems", "full", "owner")
            )

        if is_public:
            display_name = f"Public: {name}"
        elif is_shared:
            display_name = f"{owner}: {name}"
        else:
            display_name = name

        return RemoteCollection(
            id=folder_id,
            display_name=display_name,
            owner=owner,
            read_only=read_only,
            kind=kind,
            color=folder.get("color") or None,
        )

    # ------------------------------------------------------------------ #
    # Items                                                                #
    # ------------------------------------------------------------------ #

    def list_items(
        self,
        collection_id: str,
        kind: ItemKind,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> RemoteListing:
        self._ensure_logged_in()
        if kind is ItemKind.CONTACT:
            return self._list_contacts(collection_id)
        return self._list_occurrences(collection_id, window_start, window_end)

    def _list_occurrences(
        self, collection_id: str, window_start: datetime, window_end: datetime
    ) -> RemoteListing:
        query = {
            "fields": [
                "id",
                "eventId",
                "folderId",
                *EVENT_FIELDS,
                "start",
                "end",
                "lastModificationTime",
                "isAllDay",
            ],
            "conditions": [
                _condition("start", "GreaterEq", format_kerio_utc(window_start)),
                _condition("end", "LessThan", format_kerio_utc(window_end + WINDOW_END_SLACK)),
            ],
            "combining": "And",
            "start": 0,
            "limit": OCCURRENCE_LIMIT,
            "orderBy": [{"columnName": "start", "direction": "Asc", "caseSensitive": False}],
        }
        result = self.call(
            "Occurrences.get", {"folderIds": [collection_id], "query": query}
        )
        entries = result.get("list")
        if entries is None:
            entries = result.get("occurrences") or []

        listing = RemoteListing()
        for occ in entries:
            try:
                listing.items.append(self.parse_occurrence(occ, collection_id))
            except ParseFailure as e:
                logger.warning(f"Skipping unreadable occurrence in {collection_id}: {e}")
                listing.rejected.append(str(e))
        logger.debug(f"Occurrences.get: {len(listing.items)} items from {collection_id}")
        return listing

    @staticmethod
    def parse_occurrence(occ: dict, collection_id: str) -> RemoteItem:
        if not isinstance(occ, dict):
            raise ParseFailure(f"occurrence is not an object: {occ!r}")
        all_day = bool(occ.get("isAllDay", False))
        start = occ.get("start")
        if not start:
            raise ParseFailure(f"occurrence {occ.get('id')!r} has no start")
        # Validate both ends now so a bad value rejects only this item.
        start_dt = parse_kerio_datetime(start)
        end = occ.get("end") or ""
        if end:
            parse_kerio_datetime(end)

        modified = occ.get("lastModificationTime")
        last_modified = parse_kerio_datetime(modified) if modified else None

        event_id = occ.get("eventId") or None
        occurrence_id = occ.get("id") or None
        if not occurrence_id and event_id:
            occurrence_id = f"{event_id}@{to_millis(start_dt)}"
        if not occurrence_id:
            raise ParseFailure("occurrence has neither id nor eventId")

        return RemoteItem(
            canonical_id=occurrence_id,
            collection_id=occ.get("folderId") or collection_id,
            kind=ItemKind.EVENT,
            secondary_id=event_id,
            fields={key: occ.get(key) or "" for key in EVENT_FIELDS},
            last_modified=last_modified,
            range=RemoteRange(start=start, end=end, all_day=all_day),
        )

    def _list_contacts(self, collection_id: str) -> RemoteListing:
        listing = RemoteListing()
        offset = 0
        while True:
            query = {
                "start": offset,
                "limit": CONTACT_PAGE_SIZE,
                "fields": [
                    "id",
                    "folderId",
                    "watermark",
                    *CONTACT_FIELDS,
                    "emailAddresses",
                    "phoneNumbers",
                ],
            }
            result = self.call("Contacts.get", {"folderIds": [collection_id], "query": query})
            page = result.get("list") or []
            for raw in page:
                try:
                    listing.items.append(self.parse_contact(raw, collection_id))
                except ParseFailure as e:
                    logger.warning(f"Skipping unreadable contact in {collection_id}: {e}")
                    listing.rejected.append(str(e))
            offset += len(page)
            total = result.get("totalItems", 0)
            if not page or offset >= total:
                break
        logger.debug(f"Contacts.get: {len(listing.items)} items from {collection_id}")
        return listing

    @staticmethod
    def parse_contact(raw: dict, collection_id: str) -> RemoteItem:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ParseFailure(f"contact without id: {raw!r}")
        emails = []
        for entry in raw.get("emailAddresses") or []:
            value = entry.get("address") or entry.get("email") if isinstance(entry, dict) else entry
            if value:
                emails.append(value)
        phones = []
        for entry in raw.get("phoneNumbers") or []:
            value = entry.get("number") or entry.get("phone") if isinstance(entry, dict) else entry
            if value:
                phones.append(value)

        fields = {key: raw.get(key) or "" for key in CONTACT_FIELDS}
        fields["emails"] = emails
        fields["phones"] = phones
        # Only an opaque watermark is available, never a modification time.
        return RemoteItem(
            canonical_id=raw["id"],
            collection_id=raw.get("folderId") or collection_id,
            kind=ItemKind.CONTACT,
            fields=fields,
            last_modified=None,
        )

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    def create_item(
        self,
        collection_id: str,
        kind: ItemKind,
        fields: dict,
        remote_range: RemoteRange | None = None,
    ) -> str:
        """
        Create an item and return the id the server hands back.

        For events this is the parent event id, not the occurrence id.
        """
        self._ensure_logged_in()
        if kind is ItemKind.CONTACT:
            method = "Contacts.create"
            params = {"contacts": [{"folderId": collection_id, **self._contact_payload(fields)}]}
        else:
            if remote_range is None:
                raise ParseFailure("An event needs a start to be created")
            method = "Events.create"
            params = {
                "events": [
                    {"folderId": collection_id, **self._event_payload(fields, remote_range)}
                ]
            }
        result = self.call(method, params)
        self._raise_batch_errors(method, result)
        created = result.get("result") or []
        if not created or not isinstance(created[0], dict) or not created[0].get("id"):
            raise ParseFailure(f"{method}: response carries no id")
        return created[0]["id"]

    def update_item(
        self,
        canonical_id: str,
        kind: ItemKind,
        fields: dict,
        remote_range: RemoteRange | None = None,
    ):
        """Replace an item's content on the server."""
        self._ensure_logged_in()
        if kind is ItemKind.CONTACT:
            method = "Contacts.set"
            params = {"contacts": [{"id": canonical_id, **self._contact_payload(fields)}]}
        else:
            existing = self._get_occurrence(canonical_id)
            existing.update(self._event_payload(fields, remote_range))
            existing["modification"] = "modifyThis"
            method = "Occurrences.set"
            params = {"occurrences": [existing]}
        self._raise_batch_errors(method, self.call(method, params))

    def delete_item(self, canonical_id: str, kind: ItemKind):
        self._ensure_logged_in()
        if kind is ItemKind.CONTACT:
            method = "Contacts.remove"
            params = {"ids": [canonical_id]}
        else:
            method = "Occurrences.remove"
            params = {"occurrences": [{"id": canonical_id, "modification": "modifyThis"}]}
        self._raise_batch_errors(method, self.call(method, params))

    def _get_occurrence(self, occurrence_id: str) -> dict:
        result = self.call("Occurrences.getById", {"ids": [occurrence_id]})
        self._raise_batch_errors("Occurrences.getById", result)
        for key in ("occurrences", "list", "result"):
            entries = result.get(key)
            if entries:
                return dict(entries[0])
        raise RemoteItemNotFound(f"Occurrence {occurrence_id} not found")

    @staticmethod
    def _event_payload(fields: dict, remote_range: RemoteRange | None) -> dict:
        payload = {key: fields.get(key) or "" for key in EVENT_FIELDS}
        if remote_range is not None:
            payload["isAllDay"] = remote_range.all_day
            payload["start"] = remote_range.start
            payload["end"] = remote_range.end
        return payload

    @staticmethod
    def _contact_payload(fields: dict) -> dict:
        payload = {key: fields.get(key) or "" for key in CONTACT_FIELDS}
        payload["emailAddresses"] = [
            {"address": email, "type": "EmailWork"} for email in fields.get("emails") or []
        ]
        payload["phoneNumbers"] = [
            {"number": phone, "type": "TypeWorkVoice"} for phone in fields.get("phones") or []
        ]
        return payload

    # ------------------------------------------------------------------ #
    # Identity                                                             #
    # ------------------------------------------------------------------ #

    def resolve_canonical_id(
        self, collection_id: str, secondary_id: str, approx_start: datetime | None
    ) -> str:
        """
        Find the occurrence id for a freshly created event.

        Searches a window around the approximate start and picks the
        occurrence of ``secondary_id`` that starts closest to it. Raises
        IdentityUnresolved when there is nothing to search by or nothing
        matched.
        """
        if not collection_id or not secondary_id or approx_start is None:
            raise IdentityUnresolved(
                f"Cannot search for {secondary_id!r} without a folder and start"
            )
        self._ensure_logged_in()
        query = {
            "fields": ["id", "eventId", "start", "end"],
            "conditions": [
                _condition("eventId", "Equal", secondary_id),
                _condition("start", "GreaterEq", format_kerio_utc(approx_start - RESOLVE_WINDOW)),
                _condition(
                    "end",
                    "LessThan",
                    format_kerio_utc(approx_start + RESOLVE_WINDOW + WINDOW_END_SLACK),
                ),
            ],
            "combining": "And",
            "start": 0,
            "limit": 50,
        }
        result = self.call("Occurrences.get", {"folderIds": [collection_id], "query": query})
        entries = result.get("list")
        if entries is None:
            entries = result.get("occurrences") or []

        target_ms = to_millis(approx_start)
        best_id = None
        best_delta = None
        for occ in entries:
            if not isinstance(occ, dict) or not occ.get("id"):
                continue
            if occ.get("eventId") != secondary_id or not occ.get("start"):
                continue
            try:
                start_ms = to_millis(parse_kerio_datetime(occ["start"]))
            except ParseFailure:
                continue
            delta = abs(start_ms - target_ms)
            if best_delta is None or delta < best_delta:
                best_id, best_delta = occ["id"], delta
        if best_id is None:
            raise IdentityUnresolved(
                f"No occurrence of {secondary_id} near {format_kerio_utc(approx_start)}"
            )
        return best_id
