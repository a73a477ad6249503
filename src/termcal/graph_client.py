"""
Microsoft Graph calendar reads: paginated, bearer-authenticated, read-only.
"""

import logging
from collections.abc import Callable
from collections.abc import Iterator
from datetime import UTC
from datetime import datetime
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import httpx

from termcal.models import Calendar
from termcal.models import Credential
from termcal.models import Event
from termcal.models import PermanentFetchError
from termcal.models import SyncWindow
from termcal.models import TransientFetchError
from termcal.models import UnauthorizedError

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
PAGE_SIZE = 100
CALENDAR_FIELDS = "id,name,canShare"
EVENT_FIELDS = (
    "id,subject,start,end,isAllDay,location,organizer,attendees,body,lastModifiedDateTime"
)
# 408 and 429 are the only 4xx statuses worth retrying.
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

logger = logging.getLogger(__name__)


class GraphClient:
    """Wrapper for the calendar list and calendar view endpoints.

    Each fetch_* call follows @odata.nextLink until exhausted and returns the
    concatenated result; any page failure raises and nothing partial is returned.
    """

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        base_url: str = GRAPH_BASE_URL,
        on_unauthorized: Callable[[], None] | None = None,
    ):
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.Client(timeout=30.0)
        self.base_url = base_url.rstrip("/")
        self.on_unauthorized = on_unauthorized

    def close(self):
        if self._owns_http_client:
            self.http_client.close()

    def fetch_all_calendars(self, credential: Credential) -> list[Calendar]:
        items = self._paginate(
            credential, f"{self.base_url}/me/calendars", {"$select": CALENDAR_FIELDS}
        )
        calendars = [parse_calendar(item) for item in items]
        logger.debug(f"Fetched {len(calendars)} calendar(s)")
        return calendars

    def fetch_all_events(
        self, credential: Credential, calendar_id: str, window: SyncWindow
    ) -> list[Event]:
        """All event instances overlapping the window, recurring series expanded."""
        url = f"{self.base_url}/me/calendars/{quote(calendar_id, safe='')}/calendarView"
        params = {
            "startDateTime": _graph_timestamp(window.start),
            "endDateTime": _graph_timestamp(window.end),
            "$select": EVENT_FIELDS,
            "$orderby": "start/dateTime",
            "$top": str(PAGE_SIZE),
        }
        items = self._paginate(credential, url, params)
        events = [parse_event(item, calendar_id) for item in items]
        logger.debug(f"Fetched {len(events)} event(s) for calendar {calendar_id}")
        return events

    # ------------------------------------------------------------------ #
    # HTTP plumbing                                                        #
    # ------------------------------------------------------------------ #

    def _paginate(self, credential: Credential, url: str, params: dict[str, str]) -> list[dict]:
        return list(self._iter_pages(credential, url, params))

    def _iter_pages(
        self, credential: Credential, url: str, params: dict[str, str] | None
    ) -> Iterator[dict]:
        pages = 0
        next_url: str | None = url
        while next_url:
            payload = self._get_json(credential, next_url, params)
            pages += 1
            items = payload.get("value")
            if not isinstance(items, list):
                raise PermanentFetchError(f"Unexpected response shape from {next_url}")
            yield from items
            next_url = payload.get("@odata.nextLink")
            # the cursor URL already carries the query
            params = None
        if pages > 1:
            logger.debug(f"Followed {pages} page(s) from {url}")

    def _get_json(
        self, credential: Credential, url: str, params: dict[str, str] | None
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }
        try:
            response = self.http_client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Request to {url} failed: {e}") from e

        self._raise_for_status(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise PermanentFetchError(f"Invalid JSON from {url}") from e
        if not isinstance(payload, dict):
            raise PermanentFetchError(f"Unexpected JSON payload from {url}")
        return payload

    def _raise_for_status(self, response: httpx.Response):
        status = response.status_code
        if 200 <= status < 300:
            return
        message = f"Graph API error {status}: {_error_message(response)}"
        if status == 401:
            if self.on_unauthorized is not None:
                self.on_unauthorized()
            raise UnauthorizedError(message, status_code=status)
        if status >= 500 or status in _RETRYABLE_CLIENT_STATUSES:
            raise TransientFetchError(
                message,
                status_code=status,
                retry_after=_retry_after_seconds(response.headers.get("Retry-After")),
            )
        raise PermanentFetchError(message, status_code=status)


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def parse_calendar(item: dict) -> Calendar:
    if not isinstance(item, dict):
        raise PermanentFetchError(f"Unexpected calendar entry in API response: {item!r}")
    calendar_id = item.get("id")
    if not isinstance(calendar_id, str) or not calendar_id:
        raise PermanentFetchError("Calendar without an id in API response")
    return Calendar(
        id=calendar_id,
        display_name=item.get("name") or "Unnamed Calendar",
        owner_flag=bool(item.get("canShare")),
    )


def parse_event(item: dict, calendar_id: str) -> Event:
    """Build an Event from one calendarView entry.

    Any entry whose shape does not match what Graph documents raises
    PermanentFetchError, so the calendar fails instead of the whole cycle.
    """
    if not isinstance(item, dict):
        raise PermanentFetchError(f"Unexpected event entry in calendar {calendar_id}: {item!r}")
    event_id = item.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise PermanentFetchError(f"Event without an id in calendar {calendar_id}")
    try:
        start = parse_graph_datetime(item["start"]["dateTime"], item["start"].get("timeZone"))
        end = parse_graph_datetime(item["end"]["dateTime"], item["end"].get("timeZone"))
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise PermanentFetchError(f"Event {event_id} has an unreadable start/end: {e}") from e

    last_modified = None
    if item.get("lastModifiedDateTime"):
        try:
            last_modified = parse_graph_datetime(item["lastModifiedDateTime"])
        except (AttributeError, ValueError):
            logger.debug(f"Ignoring unparseable lastModifiedDateTime on {event_id}")

    try:
        body = _object(item, "body")
        attendees = item.get("attendees") or []
        if not isinstance(attendees, list):
            raise TypeError(f"attendees is {type(attendees).__name__}, expected a list")
        return Event(
            id=event_id,
            calendar_id=calendar_id,
            subject=item.get("subject") or "(No title)",
            start=start,
            end=end,
            all_day_flag=bool(item.get("isAllDay")),
            location=_object(item, "location").get("displayName") or "",
            organizer=_format_address(_object(item, "organizer").get("emailAddress")),
            attendees=tuple(
                formatted
                for formatted in (
                    _format_address(_object(a or {}, "emailAddress")) for a in attendees
                )
                if formatted
            ),
            body=body.get("content") or "",
            body_type=(body.get("contentType") or "text").lower(),
            last_modified=last_modified,
        )
    except (AttributeError, TypeError) as e:
        raise PermanentFetchError(f"Event {event_id} has an unexpected shape: {e}") from e


def parse_graph_datetime(value: str, time_zone: str | None = "UTC") -> datetime:
    """Parse Graph's ISO timestamps (seven fractional digits, optional Z) into UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, tail = text.partition(".")
        digits = tail
        offset = ""
        for sep in ("+", "-"):
            if sep in tail:
                digits, _, rest = tail.partition(sep)
                offset = sep + rest
                break
        text = f"{head}.{digits[:6]}{offset}"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone(time_zone))
    return parsed.astimezone(UTC)


def _zone(name: str | None):
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"Unknown time zone {name!r}, assuming UTC")
        return UTC


def _graph_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _object(container: dict, key: str) -> dict:
    """Return container[key] as a dict; missing or null becomes {}."""
    if not isinstance(container, dict):
        raise TypeError(f"expected an object holding {key!r}, got {type(container).__name__}")
    value = container.get(key) or {}
    if not isinstance(value, dict):
        raise TypeError(f"{key} is {type(value).__name__}, expected an object")
    return value


def _format_address(address: dict | None) -> str:
    if not address:
        return ""
    name = (address.get("name") or "").strip()
    email = (address.get("address") or "").strip()
    if name and email and name != email:
        return f"{name} <{email}>"
    return name or email


def _retry_after_seconds(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message") or error.get("code")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "request failed without an error payload"
