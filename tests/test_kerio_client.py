"""
Unit tests for KerioApiClient against a stubbed requests session.
"""

import pytest
import requests

from kerio_sync.kerio_client import KerioApiClient
from kerio_sync.kerio_client import KerioRpcError
from kerio_sync.kerio_client import normalize_api_url
from kerio_sync.models import AuthFailure
from kerio_sync.models import IdentityUnresolved
from kerio_sync.models import ItemKind
from kerio_sync.models import ParseFailure
from kerio_sync.models import RemoteItemNotFound
from kerio_sync.models import RemoteRange
from kerio_sync.models import TransientIOFailure
from kerio_sync.results import ErrorKind
from kerio_sync.sync.gateway import RemoteGateway
from tests.conftest import utc

_INVALID = object()


class StubResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        if self._payload is _INVALID:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class StubSession:
    """Returns queued responses in order and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, headers=None, verify=True, timeout=None):
        self.requests.append({"url": url, "body": json, "headers": headers or {}})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def method(self, index: int) -> str:
        return self.requests[index]["body"]["method"]

    def params(self, index: int) -> dict:
        return self.requests[index]["body"]["params"]


def _ok(result: dict) -> StubResponse:
    return StubResponse({"jsonrpc": "2.0", "id": 1, "result": result})


def _rpc_error(code: int, message: str) -> StubResponse:
    return StubResponse({"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}})


def _client(*responses, logged_in: bool = True) -> tuple[KerioApiClient, StubSession]:
    session = StubSession(*responses)
    client = KerioApiClient("mail.example.com", "alice", "secret", session=session)
    if logged_in:
        client.token = "tok"
    return client, session


class TestNormalizeApiUrl:
    @pytest.mark.parametrize(
        "given, expected",
        [
            ("mail.example.com", "https://mail.example.com/webmail/api/jsonrpc/"),
            ("https://mail.example.com/", "https://mail.example.com/webmail/api/jsonrpc/"),
            ("http://host/webmail/api/jsonrpc", "http://host/webmail/api/jsonrpc/"),
            ("  mail.example.com  ", "https://mail.example.com/webmail/api/jsonrpc/"),
        ],
    )
    def test_normalize(self, given, expected):
        assert normalize_api_url(given) == expected


class TestSession:
    def test_login_stores_token_for_later_calls(self):
        client, session = _client(
            _ok({"token": "abc"}), _ok({"list": []}), _ok({"list": []}), logged_in=False
        )

        client.list_collections(ItemKind.EVENT)

        assert session.method(0) == "Session.login"
        assert session.params(0)["userName"] == "alice"
        assert "X-Token" not in session.requests[0]["headers"]
        assert session.requests[1]["headers"]["X-Token"] == "abc"
        assert session.requests[0]["url"] == "https://mail.example.com/webmail/api/jsonrpc/"

    def test_rejected_login_is_auth_failure(self):
        client, _ = _client(_rpc_error(1000, "Invalid user name or password"), logged_in=False)
        with pytest.raises(AuthFailure):
            client.login()

    def test_login_without_token_is_auth_failure(self):
        client, _ = _client(_ok({}), logged_in=False)
        with pytest.raises(AuthFailure):
            client.login()

    def test_logout_failure_is_swallowed(self):
        client, _ = _client(StubResponse(status_code=500))
        client.logout()
        assert client.token is None


class TestErrorMapping:
    @pytest.mark.parametrize("status", [401, 403])
    def test_http_auth_status(self, status):
        client, _ = _client(StubResponse(status_code=status))
        with pytest.raises(AuthFailure):
            client.call("Folders.get")

    def test_http_server_error(self):
        client, _ = _client(StubResponse(status_code=503))
        with pytest.raises(TransientIOFailure):
            client.call("Folders.get")

    def test_connection_error(self):
        client, _ = _client(requests.ConnectionError("refused"))
        with pytest.raises(TransientIOFailure):
            client.call("Folders.get")

    def test_non_json_body(self):
        client, _ = _client(StubResponse(_INVALID))
        with pytest.raises(ParseFailure):
            client.call("Folders.get")

    def test_session_expired_code(self):
        client, _ = _client(_rpc_error(-32003, "Session expired"))
        with pytest.raises(AuthFailure):
            client.call("Folders.get")

    def test_not_found_message(self):
        client, _ = _client(_rpc_error(1000, "Item not found"))
        with pytest.raises(RemoteItemNotFound):
            client.call("Occurrences.remove")

    def test_other_rpc_error_is_transient(self):
        client, _ = _client(_rpc_error(-32000, "Internal error"))
        with pytest.raises(KerioRpcError) as exc_info:
            client.call("Folders.get")
        assert exc_info.value.code == -32000
        assert isinstance(exc_info.value, TransientIOFailure)


class TestFolders:
    FOLDERS = {
        "list": [
            {"id": "F1", "name": "Calendar", "type": "FCalendar", "placeType": "FPlaceMailbox",
             "color": "#3366FF", "rights": {"modify": True}},
            {"id": "C1", "name": "Contacts", "type": "FContact"},
            {"id": "F2", "name": "Team", "type": "FCalendar", "placeType": "FPlacePeople",
             "ownerName": "bob", "rights": {"read": True}},
            {"name": "broken", "type": "FCalendar"},
        ]
    }

    def test_own_and_shared_calendars(self):
        client, _ = _client(_ok(self.FOLDERS), StubResponse(status_code=500))

        collections = {c.id: c for c in client.list_collections(ItemKind.EVENT)}

        assert set(collections) == {"F1", "F2"}
        assert collections["F1"].display_name == "Calendar"
        assert collections["F1"].color == "#3366FF"
        assert not collections["F1"].read_only
        assert collections["F2"].display_name == "bob: Team"
        assert collections["F2"].read_only

    def test_public_folders_are_merged(self):
        public = {"list": [{"id": "P1", "name": "Holidays", "type": "FCalendar"}]}
        client, _ = _client(_ok(self.FOLDERS), _ok(public))

        collections = {c.id: c for c in client.list_collections(ItemKind.EVENT)}

        assert collections["P1"].display_name == "Public: Holidays"

    def test_contact_folders(self):
        client, _ = _client(_ok(self.FOLDERS), _ok({"list": []}))
        assert [c.id for c in client.list_collections(ItemKind.CONTACT)] == ["C1"]


class TestListItems:
    def test_occurrences_are_parsed_and_bad_ones_rejected(self):
        occurrences = {
            "list": [
                {"id": "keriostorage://occurrence/1", "eventId": "E1", "summary": "Standup",
                 "start": "20250120T090000Z", "end": "20250120T091500Z",
                 "lastModificationTime": "20250110T080000Z", "isAllDay": False},
                {"id": "keriostorage://occurrence/2", "eventId": "E2", "summary": "Holiday",
                 "start": "20251217", "end": "20251217", "isAllDay": True},
                {"eventId": "E3", "start": "20250121T100000Z", "end": "20250121T110000Z"},
                {"id": "keriostorage://occurrence/4", "eventId": "E4"},
            ]
        }
        client, session = _client(_ok(occurrences))

        listing = client.list_items("F1", ItemKind.EVENT, utc(2024, 7, 1), utc(2026, 1, 1))

        assert session.method(0) == "Occurrences.get"
        assert session.params(0)["folderIds"] == ["F1"]
        assert len(listing.items) == 3
        assert len(listing.rejected) == 1

        timed, all_day, no_id = listing.items
        assert timed.secondary_id == "E1"
        assert timed.fields == {"summary": "Standup", "description": "", "location": ""}
        assert timed.last_modified == utc(2025, 1, 10, 8)
        assert all_day.range == RemoteRange("20251217", "20251217", all_day=True)
        assert all_day.last_modified is None
        assert no_id.canonical_id == "E3@1737453600000"

    def test_wrongly_typed_dates_are_rejected_not_raised(self):
        occurrences = {
            "list": [
                {"id": "keriostorage://occurrence/1", "eventId": "E1",
                 "start": "20250120T090000Z", "end": "20250120T091500Z"},
                {"id": "keriostorage://occurrence/2", "eventId": "E2",
                 "start": 20250110, "end": "20250110T100000Z"},
                {"id": "keriostorage://occurrence/3", "eventId": "E3",
                 "start": "20250111T090000Z", "end": "20250111T100000Z",
                 "lastModificationTime": {"bad": 1}},
            ]
        }
        client, _ = _client(_ok(occurrences))

        listing = client.list_items("F1", ItemKind.EVENT, utc(2024, 7, 1), utc(2026, 1, 1))

        assert [i.secondary_id for i in listing.items] == ["E1"]
        assert len(listing.rejected) == 2

        client, _ = _client(_ok(occurrences))
        result = RemoteGateway(client).list_items("F1", ItemKind.EVENT, utc(2024, 7, 1), utc(2026, 1, 1))
        assert result.ok
        assert len(result.value.rejected) == 2

    def test_contacts_are_paged(self, monkeypatch):
        monkeypatch.setattr("kerio_sync.kerio_client.CONTACT_PAGE_SIZE", 1)
        page1 = {"list": [{"id": "K1", "commonName": "Ann",
                           "emailAddresses": [{"address": "ann@example.com"}]}], "totalItems": 2}
        page2 = {"list": [{"id": "K2", "commonName": "Bo",
                           "phoneNumbers": [{"number": "+420 123"}]}], "totalItems": 2}
        client, session = _client(_ok(page1), _ok(page2))

        listing = client.list_items("C1", ItemKind.CONTACT)

        assert [i.canonical_id for i in listing.items] == ["K1", "K2"]
        assert session.params(1)["query"]["start"] == 1
        assert listing.items[0].fields["emails"] == ["ann@example.com"]
        assert listing.items[1].fields["phones"] == ["+420 123"]
        assert all(i.last_modified is None for i in listing.items)


class TestMutations:
    def test_create_event_returns_parent_id(self):
        client, session = _client(_ok({"errors": [], "result": [{"inputIndex": 0, "id": "E42"}]}))

        new_id = client.create_item(
            "F1", ItemKind.EVENT, {"summary": "Lunch"},
            RemoteRange("20250124T120000Z", "20250124T130000Z"),
        )

        assert new_id == "E42"
        event = session.params(0)["events"][0]
        assert event["folderId"] == "F1"
        assert event["start"] == "20250124T120000Z"
        assert event["isAllDay"] is False

    def test_create_batch_error(self):
        client, _ = _client(_ok({"errors": [{"message": "Folder does not exist"}], "result": []}))
        with pytest.raises(RemoteItemNotFound):
            client.create_item("F9", ItemKind.EVENT, {}, RemoteRange("20250124", "20250124", True))

    def test_create_without_id(self):
        client, _ = _client(_ok({"errors": [], "result": []}))
        with pytest.raises(ParseFailure):
            client.create_item("F1", ItemKind.CONTACT, {"commonName": "Ann"})

    def test_update_occurrence_keeps_unknown_fields(self):
        existing = {"occurrences": [{"id": "occ1", "eventId": "E1", "summary": "Old",
                                     "attendees": [{"displayName": "bob"}]}]}
        client, session = _client(_ok(existing), _ok({"errors": []}))

        client.update_item(
            "occ1", ItemKind.EVENT, {"summary": "New"},
            RemoteRange("20250124T120000Z", "20250124T130000Z"),
        )

        assert session.method(1) == "Occurrences.set"
        sent = session.params(1)["occurrences"][0]
        assert sent["summary"] == "New"
        assert sent["attendees"] == [{"displayName": "bob"}]
        assert sent["modification"] == "modifyThis"

    def test_update_missing_occurrence(self):
        client, _ = _client(_ok({"occurrences": []}))
        with pytest.raises(RemoteItemNotFound):
            client.update_item("occ1", ItemKind.EVENT, {}, None)

    def test_delete_contact(self):
        client, session = _client(_ok({"errors": []}))
        client.delete_item("K1", ItemKind.CONTACT)
        assert session.method(0) == "Contacts.remove"
        assert session.params(0) == {"ids": ["K1"]}


class TestResolveCanonicalId:
    def test_picks_closest_occurrence_of_the_event(self):
        found = {
            "list": [
                {"id": "occ-early", "eventId": "E1", "start": "20250124T080000Z"},
                {"id": "occ-close", "eventId": "E1", "start": "20250124T120500Z"},
                {"id": "occ-other", "eventId": "E2", "start": "20250124T120000Z"},
            ]
        }
        client, session = _client(_ok(found))

        assert client.resolve_canonical_id("F1", "E1", utc(2025, 1, 24, 12)) == "occ-close"
        conditions = session.params(0)["query"]["conditions"]
        assert {"fieldName": "eventId", "comparator": "Equal", "value": "E1"} in conditions

    def test_nothing_found(self):
        client, _ = _client(_ok({"list": [{"id": "occ-other", "eventId": "E2",
                                           "start": "20250124T120000Z"}]}))
        with pytest.raises(IdentityUnresolved):
            client.resolve_canonical_id("F1", "E1", utc(2025, 1, 24, 12))

    def test_without_start_makes_no_call(self):
        client, session = _client()
        with pytest.raises(IdentityUnresolved):
            client.resolve_canonical_id("F1", "E1", None)
        assert session.requests == []

    def test_gateway_reports_unresolved_identity(self):
        client, _ = _client(_ok({"list": []}))

        result = RemoteGateway(client).resolve_canonical_id("F1", "E1", utc(2025, 1, 24, 12))

        assert not result.ok
        assert result.kind is ErrorKind.IDENTITY_UNRESOLVED
