"""
GraphClient tests against an httpx.MockTransport: pagination, status mapping,
and payload parsing. No network access.
"""

from datetime import UTC
from datetime import datetime
from datetime import timedelta

import httpx
import pytest

from termcal.graph_client import GRAPH_BASE_URL
from termcal.graph_client import GraphClient
from termcal.graph_client import parse_event
from termcal.graph_client import parse_graph_datetime
from termcal.models import Credential
from termcal.models import PermanentFetchError
from termcal.models import SyncWindow
from termcal.models import TransientFetchError
from termcal.models import UnauthorizedError
from tests.conftest import CAL_1
from tests.conftest import NOW

CREDENTIAL = Credential(
    access_token="access-1",
    access_token_expiry=datetime(2030, 1, 1, tzinfo=UTC),
    refresh_token="refresh-1",
)
WINDOW = SyncWindow.around(NOW, 31, 92)
NEXT_PAGE = f"{GRAPH_BASE_URL}/me/calendars/{CAL_1}/calendarView?$skiptoken=abc"


def graph_event(event_id: str, subject: str = "Meeting", day: int = 2) -> dict:
    return {
        "id": event_id,
        "subject": subject,
        "start": {"dateTime": f"2026-03-{day:02d}T10:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": f"2026-03-{day:02d}T11:00:00.0000000", "timeZone": "UTC"},
        "isAllDay": False,
        "lastModifiedDateTime": "2026-02-01T08:00:00.1234567Z",
    }


def make_client(handler, **kwargs) -> GraphClient:
    return GraphClient(http_client=httpx.Client(transport=httpx.MockTransport(handler)), **kwargs)


class TestPagination:
    def test_follows_next_link_until_exhausted(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            if "skiptoken" in str(request.url):
                return httpx.Response(200, json={"value": [graph_event("E2")]})
            return httpx.Response(
                200, json={"value": [graph_event("E1")], "@odata.nextLink": NEXT_PAGE}
            )

        events = make_client(handler).fetch_all_events(CREDENTIAL, CAL_1, WINDOW)

        assert [e.id for e in events] == ["E1", "E2"]
        assert len(seen) == 2
        first, second = seen
        assert first.url.params["startDateTime"] == "2026-01-29T00:00:00Z"
        assert first.url.params["endDateTime"] == "2026-06-01T00:00:00Z"
        assert first.url.params["$top"] == "100"
        # the cursor already carries the query
        assert second.url.params["$skiptoken"] == "abc"
        assert "startDateTime" not in second.url.params

    def test_every_request_is_authenticated_in_utc(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer access-1"
            assert request.headers["Prefer"] == 'outlook.timezone="UTC"'
            return httpx.Response(200, json={"value": []})

        assert make_client(handler).fetch_all_events(CREDENTIAL, CAL_1, WINDOW) == []

    def test_failure_on_later_page_returns_nothing(self):
        def handler(request):
            if "skiptoken" in str(request.url):
                return httpx.Response(503, json={"error": {"message": "busy"}})
            return httpx.Response(
                200, json={"value": [graph_event("E1")], "@odata.nextLink": NEXT_PAGE}
            )

        with pytest.raises(TransientFetchError):
            make_client(handler).fetch_all_events(CREDENTIAL, CAL_1, WINDOW)

    def test_calendar_list(self):
        def handler(request):
            assert request.url.path == "/v1.0/me/calendars"
            return httpx.Response(
                200,
                json={
                    "value": [
                        {"id": "c1", "name": "Calendar", "canShare": True},
                        {"id": "c2", "name": None, "canShare": False},
                    ]
                },
            )

        calendars = make_client(handler).fetch_all_calendars(CREDENTIAL)

        assert [(c.id, c.display_name, c.owner_flag) for c in calendars] == [
            ("c1", "Calendar", True),
            ("c2", "Unnamed Calendar", False),
        ]


class TestStatusMapping:
    def test_401_reports_and_raises_unauthorized(self):
        reports = []
        client = make_client(
            lambda request: httpx.Response(401, json={"error": {"code": "InvalidToken"}}),
            on_unauthorized=lambda: reports.append(True),
        )

        with pytest.raises(UnauthorizedError) as exc_info:
            client.fetch_all_calendars(CREDENTIAL)

        assert reports == [True]
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408])
    def test_server_errors_are_transient(self, status):
        client = make_client(lambda request: httpx.Response(status, text="oops"))

        with pytest.raises(TransientFetchError) as exc_info:
            client.fetch_all_calendars(CREDENTIAL)
        assert exc_info.value.status_code == status

    def test_throttling_carries_retry_after(self):
        client = make_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "7"}, json={})
        )

        with pytest.raises(TransientFetchError) as exc_info:
            client.fetch_all_calendars(CREDENTIAL)
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.parametrize("status", [400, 403, 404])
    def test_other_client_errors_are_permanent(self, status):
        client = make_client(
            lambda request: httpx.Response(status, json={"error": {"message": "nope"}})
        )

        with pytest.raises(PermanentFetchError, match="nope"):
            client.fetch_all_calendars(CREDENTIAL)

    def test_network_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientFetchError):
            make_client(handler).fetch_all_calendars(CREDENTIAL)

    def test_malformed_payload_is_permanent(self):
        client = make_client(lambda request: httpx.Response(200, json={"value": "nope"}))

        with pytest.raises(PermanentFetchError):
            client.fetch_all_calendars(CREDENTIAL)


class TestParsing:
    def test_graph_datetime_with_seven_fraction_digits(self):
        parsed = parse_graph_datetime("2026-03-02T10:00:00.1234567")
        assert parsed == datetime(2026, 3, 2, 10, 0, 0, 123456, tzinfo=UTC)

    def test_graph_datetime_in_named_zone(self):
        parsed = parse_graph_datetime("2026-07-01T12:00:00.0000000", "Europe/Berlin")
        assert parsed == datetime(2026, 7, 1, 10, 0, tzinfo=UTC)

    def test_graph_datetime_with_z_suffix(self):
        assert parse_graph_datetime("2026-03-02T10:00:00Z") == datetime(2026, 3, 2, 10, tzinfo=UTC)

    def test_event_fields(self):
        item = graph_event("E1", subject=None)
        item.update(
            {
                "location": {"displayName": "Room 4"},
                "organizer": {"emailAddress": {"name": "Ada", "address": "ada@example.com"}},
                "attendees": [
                    {"emailAddress": {"name": "Bob", "address": "bob@example.com"}},
                    {"emailAddress": {"address": "carol@example.com"}},
                    {"emailAddress": None},
                ],
                "body": {"contentType": "HTML", "content": "<p>Agenda</p>"},
            }
        )

        event = parse_event(item, CAL_1)

        assert event.subject == "(No title)"
        assert event.calendar_id == CAL_1
        assert event.end - event.start == timedelta(hours=1)
        assert event.location == "Room 4"
        assert event.organizer == "Ada <ada@example.com>"
        assert event.attendees == ("Bob <bob@example.com>", "carol@example.com")
        assert event.body_type == "html"
        assert event.last_modified == datetime(2026, 2, 1, 8, 0, 0, 123456, tzinfo=UTC)

    def test_event_without_times_is_rejected(self):
        with pytest.raises(PermanentFetchError):
            parse_event({"id": "E1", "subject": "x"}, CAL_1)

    @pytest.mark.parametrize(
        "field, value",
        [
            ("location", "Room 1"),
            ("organizer", "ada@example.com"),
            ("attendees", ["bob@example.com"]),
            ("attendees", {"emailAddress": {}}),
            ("body", "Agenda"),
        ],
    )
    def test_unexpected_shape_is_permanent(self, field, value):
        item = graph_event("E1")
        item[field] = value

        with pytest.raises(PermanentFetchError, match="E1"):
            parse_event(item, CAL_1)

    def test_unexpected_shape_fails_the_fetch(self):
        item = graph_event("E1")
        item["location"] = "Room 1"
        client = make_client(lambda request: httpx.Response(200, json={"value": [item]}))

        with pytest.raises(PermanentFetchError, match="unexpected shape"):
            client.fetch_all_events(CREDENTIAL, CAL_1, WINDOW)

    def test_non_object_calendar_entry_is_permanent(self):
        client = make_client(lambda request: httpx.Response(200, json={"value": ["c1"]}))

        with pytest.raises(PermanentFetchError):
            client.fetch_all_calendars(CREDENTIAL)
