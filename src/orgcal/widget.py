"""Home-screen agenda snapshot export.

The native widgets read a flat JSON list from the ``events_data`` key; they
never look at the event store itself.
"""

from __future__ import annotations

import logging
import zlib
from collections.abc import Collection
from datetime import date

from orgcal.config import DEFAULT_WIDGET_LIMIT
from orgcal.core.state import StateStore, state_set
from orgcal.events import LocalEventStore

logger = logging.getLogger(__name__)

WIDGET_STATE_KEY = "events_data"


def widget_event_id(event_id: str) -> int:
    """Stable non-negative 31-bit id; both native widgets decode ``id`` as an Int."""
    return zlib.crc32(event_id.encode("utf-8")) & 0x7FFFFFFF


def export_agenda_snapshot(
    state: StateStore,
    store: LocalEventStore,
    visible_keys: Collection[str],
    today: date,
    limit: int = DEFAULT_WIDGET_LIMIT,
) -> list[dict]:
    """Write the next *limit* visible events on or after *today*; return what was written."""
    upcoming = sorted(
        (event for event in store.visible_events(visible_keys) if event.date >= today),
        key=lambda event: (event.date, event.calendar_key),
    )
    snapshot = [
        {
            "id": widget_event_id(event.id),
            "title": event.title,
            "date": event.date.isoformat(),
            "calendar_key": event.calendar_key,
            "is_all_day": True,
        }
        for event in upcoming[: max(limit, 0)]
    ]
    state_set(state, WIDGET_STATE_KEY, snapshot)
    logger.debug("Exported %d event(s) to the widget snapshot", len(snapshot))
    return snapshot
