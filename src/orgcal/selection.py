"""Persisted user selections: visible calendars and ticked organizations."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from orgcal.core.state import StateStore, state_get_list, state_set

logger = logging.getLogger(__name__)

VISIBLE_STATE_KEY = "agenda:visible:multiorg:v1"
SELECTED_ORGS_STATE_KEY = "agenda:selectedOrgs:v1"


def _load_string_set(state: StateStore, key: str) -> set[str]:
    return {item for item in state_get_list(state, key) if isinstance(item, str) and item}


class Selection:
    """Visibility set and selected-organizations set, saved on every change."""

    def __init__(self, state: StateStore) -> None:
        self._state = state
        self._visible = _load_string_set(state, VISIBLE_STATE_KEY)
        self._selected = _load_string_set(state, SELECTED_ORGS_STATE_KEY)

    # -- visibility -------------------------------------------------------

    @property
    def visible(self) -> frozenset[str]:
        return frozenset(self._visible)

    def is_visible(self, key: str) -> bool:
        return key in self._visible

    def set_visible(self, key: str, visible: bool = True) -> None:
        if visible:
            self._visible.add(key)
        else:
            self._visible.discard(key)
        self._save_visible()

    def ensure_default_visibility(self, active_keys: Iterable[str]) -> bool:
        """Make every active calendar visible when nothing is visible yet.

        Returns whether the default was applied.  Once the user has toggled
        anything the set is left alone.
        """
        if self._visible:
            return False
        keys = {key for key in active_keys if key}
        if not keys:
            return False
        self._visible = keys
        self._save_visible()
        logger.debug("Visibility defaulted to %d active calendar(s)", len(keys))
        return True

    def _save_visible(self) -> None:
        state_set(self._state, VISIBLE_STATE_KEY, sorted(self._visible))

    # -- organizations ------------------------------------------------------

    @property
    def selected_organizations(self) -> frozenset[str]:
        return frozenset(self._selected)

    def select_organization(self, name: str, selected: bool = True) -> None:
        if selected:
            self._selected.add(name)
        else:
            self._selected.discard(name)
        state_set(self._state, SELECTED_ORGS_STATE_KEY, sorted(self._selected))
