"""Local event store: the single source of truth for what the user sees.

Events live in one ordered list persisted under a single key-value entry.
Every mutation is a synchronous read-modify-persist sequence with no ``await``
in between, so two overlapping imports on the event loop cannot interleave
inside a merge and break the no-duplicate invariant:

- no two events share a non-empty ``remote_id``;
- no two events without a ``remote_id`` share ``(calendar_key, date, title)``.

The persisted shape keeps the short field names of the browser agenda
storage (``cal``, ``gid``) so existing stores load unchanged.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from collections.abc import Collection, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from orgcal.core.state import StateStore, state_get_list, state_set
from orgcal.errors import PreconditionFailed

logger = logging.getLogger(__name__)

EVENTS_STATE_KEY = "agenda:events:multiorg:v1"

GENERAL_CALENDAR_LABEL = "General"
UNTITLED_EVENT_TITLE = "(untitled)"

ContentSignature = tuple[str, dt.date, str]


def calendar_key(organization: str, label: str) -> str:
    """Build ``"<organization>::<label>"``."""
    return f"{organization}::{label}"


def general_calendar_key(organization: str) -> str:
    return calendar_key(organization, GENERAL_CALENDAR_LABEL)


def member_calendar_key(organization: str, email: str) -> str:
    return calendar_key(organization, f"member:{email}")


def organization_of(key: str) -> str:
    return key.split("::", 1)[0]


def new_event_id() -> str:
    return uuid.uuid4().hex


class Event(BaseModel):
    """A locally stored event."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_event_id)
    calendar_key: str = Field(alias="cal")
    date: dt.date
    title: str
    remote_id: str | None = Field(default=None, alias="gid")

    @property
    def signature(self) -> ContentSignature:
        return (self.calendar_key, self.date, self.title)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventCandidate(BaseModel):
    """A normalized remote event waiting to be merged."""

    model_config = ConfigDict(frozen=True)

    calendar_key: str
    date: dt.date
    title: str
    remote_id: str

    @property
    def signature(self) -> ContentSignature:
        return (self.calendar_key, self.date, self.title)


def normalize_title(title: str | None) -> str:
    return (title or "").strip()


def dedup_merge(
    base: list[Event],
    incoming: Iterable[EventCandidate],
) -> tuple[list[Event], list[Event]]:
    """Merge *incoming* into *base* without duplicates.

    Per candidate, in order:

    1. an existing event with the same ``remote_id`` wins (local title edits
       survive every later fetch);
    2. otherwise an existing event *without* a ``remote_id`` matching the
       content signature stands in for it (hand-entered before the sync);
    3. otherwise the candidate is appended.

    Returns ``(merged, appended)``.  *base* is not modified.
    """
    by_remote_id = {event.remote_id for event in base if event.remote_id}
    by_signature = {event.signature for event in base if not event.remote_id}

    merged = list(base)
    appended: list[Event] = []
    for candidate in incoming:
        if candidate.remote_id in by_remote_id:
            continue
        if candidate.signature in by_signature:
            continue
        event = Event(
            calendar_key=candidate.calendar_key,
            date=candidate.date,
            title=candidate.title,
            remote_id=candidate.remote_id,
        )
        merged.append(event)
        appended.append(event)
        by_remote_id.add(candidate.remote_id)
    return merged, appended


class LocalEventStore:
    """Ordered event collection keyed by local id, persisted on every mutation."""

    def __init__(self, state: StateStore) -> None:
        self._state = state
        self._events: list[Event] = self._load()

    def _load(self) -> list[Event]:
        """Decode the stored list, keeping the first of any duplicates.

        Browser-era stores can hold several events for one remote id; the
        rest are dropped here and disappear from storage on the next write.
        """
        events: list[Event] = []
        remote_ids: set[str] = set()
        signatures: set[ContentSignature] = set()
        for raw in state_get_list(self._state, EVENTS_STATE_KEY):
            try:
                event = Event.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Dropping malformed stored event %r: %s", raw, exc.errors()[:1])
                continue
            if event.remote_id:
                if event.remote_id in remote_ids:
                    logger.warning(
                        "Dropping stored event %s: duplicate remote id %s",
                        event.id,
                        event.remote_id,
                    )
                    continue
                remote_ids.add(event.remote_id)
            else:
                if event.signature in signatures:
                    logger.warning("Dropping stored event %s: duplicate content", event.id)
                    continue
                signatures.add(event.signature)
            events.append(event)
        return events

    def _persist(self, events: list[Event]) -> None:
        state_set(self._state, EVENTS_STATE_KEY, [event.to_storage() for event in events])
        self._events = events

    def reload(self) -> None:
        self._events = self._load()

    def events(self) -> list[Event]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def get(self, event_id: str) -> Event | None:
        for event in self._events:
            if event.id == event_id:
                return event
        return None

    def _check_invariant(
        self,
        *,
        calendar_key: str,
        on: dt.date,
        title: str,
        remote_id: str | None,
        ignore_id: str | None = None,
    ) -> None:
        for existing in self._events:
            if existing.id == ignore_id:
                continue
            if remote_id and existing.remote_id == remote_id:
                raise PreconditionFailed(f"An event with remote id {remote_id!r} already exists")
            if (
                not remote_id
                and not existing.remote_id
                and existing.signature == (calendar_key, on, title)
            ):
                raise PreconditionFailed(
                    f"An identical event already exists on {on.isoformat()} in {calendar_key}"
                )

    def add(
        self,
        calendar_key: str,
        on: dt.date,
        title: str,
        remote_id: str | None = None,
    ) -> Event:
        """Add a user-entered event."""
        normalized = normalize_title(title)
        if not normalized:
            raise PreconditionFailed("Event title must not be empty")
        if not calendar_key:
            raise PreconditionFailed("Event calendar key must not be empty")
        self._check_invariant(
            calendar_key=calendar_key, on=on, title=normalized, remote_id=remote_id or None
        )

        event = Event(
            calendar_key=calendar_key, date=on, title=normalized, remote_id=remote_id or None
        )
        self._persist([*self._events, event])
        logger.debug("Added local event %s on %s", event.id, on.isoformat())
        return event

    def edit_title(self, event_id: str, title: str) -> Event | None:
        """Change an event's title; ``None`` when *event_id* is unknown."""
        current = self.get(event_id)
        if current is None:
            return None
        normalized = normalize_title(title)
        if not normalized:
            raise PreconditionFailed("Event title must not be empty")
        self._check_invariant(
            calendar_key=current.calendar_key,
            on=current.date,
            title=normalized,
            remote_id=current.remote_id,
            ignore_id=event_id,
        )

        updated = current.model_copy(update={"title": normalized})
        self._persist([updated if event.id == event_id else event for event in self._events])
        return updated

    def delete(self, event_id: str) -> bool:
        remaining = [event for event in self._events if event.id != event_id]
        if len(remaining) == len(self._events):
            return False
        self._persist(remaining)
        return True

    def merge(self, candidates: Iterable[EventCandidate]) -> list[Event]:
        """Dedup-merge *candidates* and persist all appended events in one write."""
        merged, appended = dedup_merge(self._events, candidates)
        if appended:
            self._persist(merged)
        logger.info("Merged %d new event(s) into the local store", len(appended))
        return appended

    def visible_events(self, visible_keys: Collection[str]) -> list[Event]:
        return [event for event in self._events if event.calendar_key in visible_keys]

    def events_on(self, on: dt.date, visible_keys: Collection[str]) -> list[Event]:
        """Visible events of one day, ordered by calendar key."""
        items = [
            event
            for event in self._events
            if event.date == on and event.calendar_key in visible_keys
        ]
        return sorted(items, key=lambda event: event.calendar_key)
