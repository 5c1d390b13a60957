"""Shared fixtures for the orgcal test suite.

Engine tests run against :class:`FakeCalendarClient`, an in-memory
``RemoteCalendarClient`` that records every call, on top of a
``MemoryStateStore``.  No test touches the network.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from orgcal.config import AgendaConfig
from orgcal.core.state import MemoryStateStore, state_set
from orgcal.credentials import TOKEN_STATE_KEY, CredentialStore, TokenGrant
from orgcal.errors import ProviderError
from orgcal.google_client import (
    AclRole,
    AclRule,
    RemoteCalendar,
    RemoteCalendarClient,
    RemoteEvent,
    UserInfo,
)
from orgcal.sync import SyncEngine

PREFIX = "MultiappOrg · "
TODAY = date(2024, 3, 10)


class CountingConsent:
    """Consent flow double that blocks until released and counts invocations."""

    def __init__(self, grant: TokenGrant | None = None, error: Exception | None = None) -> None:
        self.calls = 0
        self.release = asyncio.Event()
        self._grant = grant or TokenGrant(access_token="ya29.fresh", expires_in=3600)
        self._error = error

    async def __call__(self) -> TokenGrant:
        self.calls += 1
        await self.release.wait()
        if self._error is not None:
            raise self._error
        return self._grant


class FakeCalendarClient(RemoteCalendarClient):
    """In-memory provider; ``calls`` keeps ``(operation, *args)`` tuples in order.

    Given a credential store, every operation first acquires a token from it
    the way ``GoogleCalendarClient`` does.
    """

    def __init__(self, credentials: CredentialStore | None = None) -> None:
        self.credentials = credentials
        self.calendars: list[RemoteCalendar] = []
        self.events: dict[str, list[RemoteEvent]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.failing_grants: set[str] = set()
        self.failing_list_inserts: set[str] = set()
        self.user = UserInfo(email="owner@example.com", name="Owner")
        self._next_id = 0

    def add_calendar(self, calendar_id: str, summary: str, access_role: str = "owner") -> None:
        self.calendars.append(
            RemoteCalendar(id=calendar_id, summary=summary, access_role=access_role)
        )

    def remote_calls(self, operation: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == operation]

    async def _authorize(self, interactive: bool) -> None:
        if self.credentials is not None:
            await self.credentials.acquire(interactive=interactive)

    async def list_calendars(self, *, interactive: bool = False) -> list[RemoteCalendar]:
        await self._authorize(interactive)
        self.calls.append(("list_calendars",))
        return list(self.calendars)

    async def list_events(
        self,
        calendar_id: str,
        range_start: datetime,
        range_end: datetime,
        *,
        interactive: bool = False,
    ) -> list[RemoteEvent]:
        await self._authorize(interactive)
        self.calls.append(("list_events", calendar_id, range_start, range_end))
        return list(self.events.get(calendar_id, []))

    async def create_calendar(self, summary: str, *, interactive: bool = False) -> RemoteCalendar:
        await self._authorize(interactive)
        self._next_id += 1
        created = RemoteCalendar(id=f"created_{self._next_id}", summary=summary, access_role="owner")
        self.calendars.append(created)
        self.calls.append(("create_calendar", summary))
        return created

    async def add_calendar_to_user_list(
        self, calendar_id: str, *, interactive: bool = False
    ) -> None:
        await self._authorize(interactive)
        self.calls.append(("add_calendar_to_user_list", calendar_id))
        if calendar_id in self.failing_list_inserts:
            raise ProviderError(status_code=409, message="Already in the calendar list")

    async def set_access_control_entry(
        self,
        calendar_id: str,
        role: AclRole,
        principal_email: str,
        notify: bool,
        *,
        interactive: bool = False,
    ) -> AclRule:
        await self._authorize(interactive)
        self.calls.append(("set_access_control_entry", calendar_id, role, principal_email, notify))
        if principal_email in self.failing_grants:
            raise ProviderError(status_code=400, message="Invalid scope value")
        return AclRule(id=f"user:{principal_email}", role=role, principal_email=principal_email)

    async def get_user_info(self, *, interactive: bool = False) -> UserInfo:
        await self._authorize(interactive)
        self.calls.append(("get_user_info",))
        return self.user


def all_day(event_id: str, on: date, summary: str | None) -> RemoteEvent:
    return RemoteEvent(id=event_id, summary=summary, status="confirmed", start_date=on)


def timed(event_id: str, start_at: datetime, summary: str | None) -> RemoteEvent:
    return RemoteEvent(id=event_id, summary=summary, status="confirmed", start_at=start_at)


def seed_token(state: MemoryStateStore, *, expires_in: timedelta = timedelta(hours=1)) -> None:
    state_set(
        state,
        TOKEN_STATE_KEY,
        {"access_token": "ya29.cached", "expires_at": (datetime.now(UTC) + expires_in).isoformat()},
    )


@pytest.fixture
def state() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def credentials(state: MemoryStateStore) -> CredentialStore:
    seed_token(state)
    return CredentialStore(state)


@pytest.fixture
def config() -> AgendaConfig:
    return AgendaConfig(timezone="Europe/Paris", organization_prefix=PREFIX)


@pytest.fixture
def engine(
    client: FakeCalendarClient,
    state: MemoryStateStore,
    credentials: CredentialStore,
    config: AgendaConfig,
) -> SyncEngine:
    return SyncEngine(client, state, credentials, config=config, today=lambda: TODAY)
