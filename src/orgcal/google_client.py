"""Remote calendar client: typed wrapper over the Google Calendar REST API.

This module defines:
- ``RemoteCalendarClient``: provider interface consumed by the sync engine
- ``GoogleCalendarClient``: httpx implementation against Calendar API v3
- the typed payloads (``RemoteCalendar``, ``RemoteEvent``, ``UserInfo``) that
  provider JSON is decoded into before it reaches the merge logic

Every call obtains a token from the :class:`~orgcal.credentials.CredentialStore`
(non-interactive unless the caller says otherwise).  Nothing here retries:
401 becomes ``RemoteAuthError``, transport failures and retryable statuses
become ``RemoteUnavailable``, other non-2xx become ``ProviderError``.
"""

from __future__ import annotations

import abc
import logging
from datetime import UTC, date, datetime
from typing import Any, Literal
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict

from orgcal.config import DEFAULT_CALENDAR_LIST_PAGE_SIZE, DEFAULT_MAX_EVENTS_PER_CALENDAR
from orgcal.credentials import CredentialStore
from orgcal.errors import ProviderError, RemoteAuthError, RemoteUnavailable

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}

AclRole = Literal["none", "freeBusyReader", "reader", "writer", "owner"]


class RemoteCalendar(BaseModel):
    """One entry of the user's calendar list."""

    model_config = ConfigDict(frozen=True)

    id: str
    summary: str
    access_role: str = ""

    @property
    def is_owner(self) -> bool:
        return self.access_role.lower() == "owner"


class RemoteEvent(BaseModel):
    """A single (already expanded) event instance.

    Exactly one of ``start_date`` (all-day) and ``start_at`` (timed) is set.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    summary: str | None = None
    status: str | None = None
    start_date: date | None = None
    start_at: datetime | None = None

    @property
    def is_all_day(self) -> bool:
        return self.start_date is not None


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    email: str | None = None
    name: str | None = None


class AclRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    role: str
    principal_email: str


# ---------------------------------------------------------------------------
# Payload decoding
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ProviderError(
            status_code=None, message=f"Google Calendar returned an invalid dateTime: {value}"
        ) from exc
    if parsed.tzinfo is None:
        raise ProviderError(
            status_code=None, message=f"Google Calendar returned a dateTime without offset: {value}"
        )
    return parsed


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _require_id(payload: dict[str, Any], what: str) -> str:
    raw = payload.get("id")
    if not isinstance(raw, str) or not raw.strip():
        raise ProviderError(status_code=None, message=f"Google {what} payload is missing an id")
    return raw.strip()


def _decode_calendar(payload: dict[str, Any]) -> RemoteCalendar:
    return RemoteCalendar(
        id=_require_id(payload, "calendar"),
        summary=_normalize_optional_text(payload.get("summary")) or "",
        access_role=_normalize_optional_text(payload.get("accessRole")) or "",
    )


def _decode_event(payload: dict[str, Any]) -> RemoteEvent | None:
    """Decode one event item; cancelled instances decode to ``None``."""
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id = _require_id(payload, "event")
    start = payload.get("start")
    if not isinstance(start, dict):
        raise ProviderError(
            status_code=None, message=f"Google Calendar event '{event_id}' has no start"
        )

    date_value = start.get("date")
    date_time = start.get("dateTime")
    if isinstance(date_value, str) and date_value.strip():
        try:
            start_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ProviderError(
                status_code=None,
                message=f"Google Calendar returned an invalid date value: {date_value}",
            ) from exc
        start_at = None
    elif isinstance(date_time, str) and date_time.strip():
        start_date = None
        start_at = _parse_google_datetime(date_time)
    else:
        raise ProviderError(
            status_code=None,
            message=f"Google Calendar event '{event_id}' has neither start.date nor start.dateTime",
        )

    return RemoteEvent(
        id=event_id,
        summary=payload.get("summary") if isinstance(payload.get("summary"), str) else None,
        status=status_raw if isinstance(status_raw, str) else None,
        start_date=start_date,
        start_at=start_at,
    )


def _google_error_details(response: httpx.Response) -> tuple[str, set[str]]:
    """Return the provider's error message (trimmed) and any error reasons."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    reasons: set[str] = set()
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            for item in error_payload.get("errors") or []:
                if isinstance(item, dict) and isinstance(item.get("reason"), str):
                    reasons.add(item["reason"])
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200], reasons
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200], reasons

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200], reasons
    return f"HTTP {response.status_code}", reasons


# ---------------------------------------------------------------------------
# Client interface
# ---------------------------------------------------------------------------


class RemoteCalendarClient(abc.ABC):
    """Operations the engine needs from a remote calendar provider."""

    @abc.abstractmethod
    async def list_calendars(self, *, interactive: bool = False) -> list[RemoteCalendar]:
        """Return the user's calendar list (single bounded page)."""

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        range_start: datetime,
        range_end: datetime,
        *,
        interactive: bool = False,
    ) -> list[RemoteEvent]:
        """Return non-cancelled single instances overlapping the range, by start time."""

    @abc.abstractmethod
    async def create_calendar(self, summary: str, *, interactive: bool = False) -> RemoteCalendar:
        """Create a secondary calendar owned by the user."""

    @abc.abstractmethod
    async def add_calendar_to_user_list(
        self, calendar_id: str, *, interactive: bool = False
    ) -> None:
        """Insert *calendar_id* into the user's calendar list."""

    @abc.abstractmethod
    async def set_access_control_entry(
        self,
        calendar_id: str,
        role: AclRole,
        principal_email: str,
        notify: bool,
        *,
        interactive: bool = False,
    ) -> AclRule:
        """Grant *role* on *calendar_id* to *principal_email*."""

    @abc.abstractmethod
    async def get_user_info(self, *, interactive: bool = False) -> UserInfo:
        """Return the signed-in principal from the identity provider."""

    async def shutdown(self) -> None:
        """Release transport resources."""
        return None


class GoogleCalendarClient(RemoteCalendarClient):
    """Google Calendar API v3 client with bearer tokens from a ``CredentialStore``."""

    def __init__(
        self,
        credentials: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
        max_events: int = DEFAULT_MAX_EVENTS_PER_CALENDAR,
        calendar_page_size: int = DEFAULT_CALENDAR_LIST_PAGE_SIZE,
    ) -> None:
        self._credentials = credentials
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._max_events = max_events
        self._calendar_page_size = calendar_page_size

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        interactive: bool = False,
    ) -> dict[str, Any]:
        access_token = await self._credentials.acquire(interactive=interactive)
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteUnavailable(
                status_code=None, message=f"{type(exc).__name__}: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            self._raise_for_status(response)

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                status_code=response.status_code,
                message="Google API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderError(
                status_code=response.status_code,
                message="Google API returned an unexpected JSON payload shape",
            )
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        message, reasons = _google_error_details(response)
        if status == 401:
            # The provider no longer accepts this token; make the next
            # interactive acquire prompt instead of replaying it.
            self._credentials.invalidate()
            raise RemoteAuthError(status_code=status, message=message)
        if status in RETRYABLE_STATUS_CODES or (status == 403 and reasons & RATE_LIMIT_REASONS):
            raise RemoteUnavailable(status_code=status, message=message)
        raise ProviderError(status_code=status, message=message)

    def _api_url(self, path: str) -> str:
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

    async def list_calendars(self, *, interactive: bool = False) -> list[RemoteCalendar]:
        payload = await self._request_json(
            "GET",
            self._api_url("/users/me/calendarList"),
            params={"maxResults": self._calendar_page_size},
            interactive=interactive,
        )
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise ProviderError(status_code=None, message="calendarList response items is not a list")
        if payload.get("nextPageToken"):
            logger.warning(
                "Calendar list truncated at %d entries; later calendars are ignored",
                self._calendar_page_size,
            )
        return [_decode_calendar(item) for item in items if isinstance(item, dict)]

    async def list_events(
        self,
        calendar_id: str,
        range_start: datetime,
        range_end: datetime,
        *,
        interactive: bool = False,
    ) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": self._max_events,
            "timeMin": _google_rfc3339(range_start),
            "timeMax": _google_rfc3339(range_end),
        }
        payload = await self._request_json(
            "GET",
            self._api_url(f"/calendars/{quote(calendar_id, safe='')}/events"),
            params=params,
            interactive=interactive,
        )
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise ProviderError(status_code=None, message="events response items is not a list")
        if payload.get("nextPageToken"):
            logger.warning(
                "Event list for calendar %s truncated at %d entries", calendar_id, self._max_events
            )

        events: list[RemoteEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            event = _decode_event(item)
            if event is not None:
                events.append(event)
        return events

    async def create_calendar(self, summary: str, *, interactive: bool = False) -> RemoteCalendar:
        payload = await self._request_json(
            "POST",
            self._api_url("/calendars"),
            json_body={"summary": summary},
            interactive=interactive,
        )
        calendar_id = _require_id(payload, "calendar")
        logger.info("Created remote calendar %s (%s)", calendar_id, summary)
        return RemoteCalendar(
            id=calendar_id,
            summary=_normalize_optional_text(payload.get("summary")) or summary,
            access_role="owner",
        )

    async def add_calendar_to_user_list(
        self, calendar_id: str, *, interactive: bool = False
    ) -> None:
        await self._request_json(
            "POST",
            self._api_url("/users/me/calendarList"),
            json_body={"id": calendar_id},
            interactive=interactive,
        )

    async def set_access_control_entry(
        self,
        calendar_id: str,
        role: AclRole,
        principal_email: str,
        notify: bool,
        *,
        interactive: bool = False,
    ) -> AclRule:
        payload = await self._request_json(
            "POST",
            self._api_url(f"/calendars/{quote(calendar_id, safe='')}/acl"),
            params={"sendNotifications": "true" if notify else "false"},
            json_body={"role": role, "scope": {"type": "user", "value": principal_email}},
            interactive=interactive,
        )
        return AclRule(
            id=_normalize_optional_text(payload.get("id")),
            role=role,
            principal_email=principal_email,
        )

    async def get_user_info(self, *, interactive: bool = False) -> UserInfo:
        payload = await self._request_json("GET", GOOGLE_USERINFO_URL, interactive=interactive)
        return UserInfo.model_validate(payload)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
