"""Unit tests for the sync engine: discovery, fetch-and-merge, sharing, reconcile."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from orgcal.core.logging import get_account_context, set_account_context
from orgcal.core.state import MemoryStateStore, state_get
from orgcal.credentials import CredentialStore
from orgcal.errors import PreconditionFailed, RemoteUnavailable
from orgcal.organizations import OrganizationOptions
from orgcal.sync import ORGS_STATE_KEY, SyncEngine, calendar_color, month_range
from orgcal.widget import WIDGET_STATE_KEY, widget_event_id

from conftest import TODAY, CountingConsent, FakeCalendarClient, all_day, timed

pytestmark = pytest.mark.unit

PARIS = ZoneInfo("Europe/Paris")
MARCH_START = date(2024, 3, 1)
MARCH_END = date(2024, 3, 31)


@pytest.fixture
def team(client: FakeCalendarClient) -> FakeCalendarClient:
    client.add_calendar("G1", "MultiappOrg · Team · General")
    client.events["G1"] = [
        all_day("evt_1", date(2024, 3, 5), "Kickoff"),
        all_day("evt_2", date(2024, 3, 20), "Review"),
    ]
    return client


@pytest.fixture(autouse=True)
def _reset_account_context():
    set_account_context(None)
    yield
    set_account_context(None)


# ============================================================================
# Helpers
# ============================================================================


def test_calendar_color_is_deterministic_hsl():
    color = calendar_color("Team::General")
    assert color == calendar_color("Team::General")
    match = re.fullmatch(r"hsl\((\d+)deg 70% 45%\)", color)
    assert match is not None
    assert 0 <= int(match.group(1)) < 360


def test_calendar_color_matches_31_multiplier_hash():
    # h = ((0 * 31 + 97) * 31 + 98) = 3105 -> 3105 % 360 = 225
    assert calendar_color("ab") == "hsl(225deg 70% 45%)"


def test_month_range_handles_leap_february():
    assert month_range(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))


# ============================================================================
# Discovery and active calendars
# ============================================================================


class TestDiscovery:
    async def test_discover_updates_directory_and_cache(self, engine, client, state):
        client.add_calendar("G1", "MultiappOrg · Team · General")

        await engine.discover()

        assert [org.name for org in engine.owned] == ["Team"]
        assert state_get(state, ORGS_STATE_KEY)["owned"][0]["name"] == "Team"

    async def test_cached_directory_is_loaded_without_remote_calls(
        self, engine, client, state, credentials, config
    ):
        client.add_calendar("G1", "MultiappOrg · Team · General")
        await engine.discover()

        fresh_client = FakeCalendarClient()
        restarted = SyncEngine(fresh_client, state, credentials, config=config)

        assert restarted.directory.names() == ["Team"]
        assert fresh_client.calls == []

    def test_malformed_cache_is_ignored(self, client, credentials, config):
        state = MemoryStateStore({ORGS_STATE_KEY: {"owned": "nope"}})
        assert SyncEngine(client, state, credentials, config=config).directory.names() == []

    async def test_active_calendars_owned_first_then_shared(self, engine, client):
        client.add_calendar("S1", "MultiappOrg · Club · General", access_role="writer")
        client.add_calendar("G1", "MultiappOrg · Team · General")
        client.add_calendar("M1", "MultiappOrg · Team · Member · ann@example.com")
        await engine.discover()

        entries = engine.active_calendars(["Team", "Club"])

        assert [entry.key for entry in entries] == [
            "Team::General",
            "Team::member:ann@example.com",
            "Club::General",
        ]
        assert [entry.remote_calendar_id for entry in entries] == ["G1", "M1", "S1"]

    async def test_general_entry_is_emitted_without_remote_calendar(self, engine, client):
        client.add_calendar("M1", "MultiappOrg · Solo · Member · a@b.co", access_role="writer")
        await engine.discover()

        general = engine.active_calendars(["Solo"])[0]

        assert general.key == "Solo::General"
        assert general.display_only

    async def test_unselected_organizations_are_not_active(self, engine, team):
        await engine.discover()
        assert engine.active_calendars([]) == []

    async def test_default_visibility_follows_selection(self, engine, team):
        engine.selection.select_organization("Team")
        await engine.discover()
        assert engine.ensure_default_visibility()
        assert engine.selection.visible == {"Team::General"}


# ============================================================================
# import_range
# ============================================================================


class TestImportRange:
    async def test_scenario_imports_exactly_two_events_once(self, engine, team):
        await engine.discover()

        appended = await engine.import_range(["Team"], MARCH_START, MARCH_END)

        assert sorted((e.remote_id, e.title, e.date) for e in appended) == [
            ("evt_1", "Kickoff", date(2024, 3, 5)),
            ("evt_2", "Review", date(2024, 3, 20)),
        ]
        assert {event.calendar_key for event in engine.events.events()} == {"Team::General"}

        assert await engine.import_range(["Team"], MARCH_START, MARCH_END) == []
        assert len(engine.events) == 2

    async def test_range_covers_whole_local_days(self, engine, team):
        await engine.discover()
        await engine.import_range(["Team"], MARCH_START, MARCH_END)

        _, calendar_id, range_start, range_end = team.remote_calls("list_events")[0]
        assert calendar_id == "G1"
        assert range_start == datetime(2024, 3, 1, tzinfo=PARIS)
        assert range_end == datetime(2024, 4, 1, tzinfo=PARIS)

    async def test_content_fallback_keeps_single_event(self, engine, client):
        client.add_calendar("A1", "MultiappOrg · A · General")
        client.events["A1"] = [all_day("remote_lunch", date(2024, 3, 1), "Lunch")]
        await engine.discover()
        engine.events.add("A::General", date(2024, 3, 1), "Lunch")

        appended = await engine.import_range(["A"], MARCH_START, MARCH_END)

        assert appended == []
        assert [(e.title, e.remote_id) for e in engine.events.events()] == [("Lunch", None)]

    async def test_local_title_edit_survives_reimport(self, engine, team):
        await engine.discover()
        await engine.import_range(["Team"], MARCH_START, MARCH_END)
        kickoff = next(e for e in engine.events.events() if e.remote_id == "evt_1")
        engine.edit_event(kickoff.id, "Kickoff (moved room)")

        await engine.import_range(["Team"], MARCH_START, MARCH_END)

        assert engine.events.get(kickoff.id).title == "Kickoff (moved room)"
        assert len(engine.events) == 2

    async def test_timed_events_use_local_date_and_untitled(self, engine, client):
        client.add_calendar("G1", "MultiappOrg · Team · General")
        client.events["G1"] = [
            timed("late", datetime(2024, 3, 20, 23, 30, tzinfo=UTC), "Late call"),
            all_day("blank", date(2024, 3, 22), "   "),
        ]
        await engine.discover()

        appended = await engine.import_range(["Team"], MARCH_START, MARCH_END)

        assert {(e.remote_id, e.date, e.title) for e in appended} == {
            ("late", date(2024, 3, 21), "Late call"),
            ("blank", date(2024, 3, 22), "(untitled)"),
        }

    async def test_display_only_calendars_are_not_fetched(self, engine, client):
        client.add_calendar("M1", "MultiappOrg · Solo · Member · a@b.co", access_role="writer")
        await engine.discover()

        await engine.import_range(["Solo"], MARCH_START, MARCH_END)

        assert [call[1] for call in client.remote_calls("list_events")] == ["M1"]

    async def test_defaults_to_persisted_selection(self, engine, team):
        engine.selection.select_organization("Team")
        await engine.discover()
        appended = await engine.import_range(None, MARCH_START, MARCH_END)
        assert len(appended) == 2

    async def test_no_cross_contamination_between_organizations(self, engine, client):
        client.add_calendar("X1", "MultiappOrg · X · General")
        client.add_calendar("Y1", "MultiappOrg · Y · General")
        client.events["X1"] = [all_day("x_evt", date(2024, 3, 5), "X only")]
        client.events["Y1"] = [all_day("y_evt", date(2024, 3, 5), "Y only")]
        await engine.discover()
        await engine.import_range(["X", "Y"], MARCH_START, MARCH_END)

        engine.selection.set_visible("Y::General")

        assert [event.title for event in engine.visible_events()] == ["Y only"]

    async def test_fetch_failure_leaves_store_untouched(self, engine, client):
        client.add_calendar("G1", "MultiappOrg · Team · General")
        client.add_calendar("G2", "MultiappOrg · Club · General")
        client.events["G1"] = [all_day("evt_1", date(2024, 3, 5), "Kickoff")]
        await engine.discover()
        client.list_events = AsyncMock(
            side_effect=[
                [all_day("evt_1", date(2024, 3, 5), "Kickoff")],
                RemoteUnavailable(status_code=503, message="Backend Error"),
            ]
        )

        with pytest.raises(RemoteUnavailable):
            await engine.import_range(["Team", "Club"], MARCH_START, MARCH_END)

        assert len(engine.events) == 0

    async def test_inverted_range_is_rejected(self, engine, team):
        await engine.discover()
        with pytest.raises(PreconditionFailed):
            await engine.import_range(["Team"], MARCH_END, MARCH_START)


# ============================================================================
# import_primary
# ============================================================================


class TestImportPrimary:
    @pytest.mark.parametrize("selected", [[], ["Team", "Club"]])
    async def test_requires_exactly_one_selected_organization(self, engine, client, selected):
        for name in selected:
            engine.selection.select_organization(name)

        with pytest.raises(PreconditionFailed):
            await engine.import_primary(MARCH_START, MARCH_END)

        assert client.calls == []

    async def test_unknown_organization_is_rejected(self, engine, client):
        engine.selection.select_organization("Ghost")
        with pytest.raises(PreconditionFailed):
            await engine.import_primary(MARCH_START, MARCH_END)
        assert client.calls == []

    async def test_imports_primary_into_general_with_prefixed_ids(self, engine, team):
        engine.selection.select_organization("Team")
        await engine.discover()
        team.events["primary"] = [all_day("p1", date(2024, 3, 8), "Dentist")]

        appended = await engine.import_primary(MARCH_START, MARCH_END)

        assert [(e.calendar_key, e.remote_id, e.title) for e in appended] == [
            ("Team::General", "primary:p1", "Dentist")
        ]
        assert team.remote_calls("list_events")[-1][1] == "primary"
        assert await engine.import_primary(MARCH_START, MARCH_END) == []


# ============================================================================
# create_organization / invite_members
# ============================================================================


class TestCreateOrganization:
    async def test_creates_general_and_shares_with_members(self, engine, client):
        result = await engine.create_organization("Team", "ann@example.com bob@example.org")

        assert result.status == "ok"
        assert result.granted == ["ann@example.com", "bob@example.org"]
        assert client.remote_calls("create_calendar") == [
            ("create_calendar", "MultiappOrg · Team · General")
        ]
        assert client.remote_calls("add_calendar_to_user_list") == [
            ("add_calendar_to_user_list", result.general_calendar_id)
        ]
        assert [call[1:] for call in client.remote_calls("set_access_control_entry")] == [
            (result.general_calendar_id, "writer", "ann@example.com", True),
            (result.general_calendar_id, "writer", "bob@example.org", True),
        ]
        assert client.calls[-1] == ("list_calendars",)
        assert engine.directory.find("Team").general_calendar_id == result.general_calendar_id

    async def test_per_member_failures_are_recorded(self, engine, client):
        client.failing_grants.add("bad@example.com")

        result = await engine.create_organization(
            "Team",
            ["ann@example.com", "bad@example.com"],
            OrganizationOptions(create_personal_calendars=True, notify_by_email=False),
        )

        assert result.status == "partial"
        assert result.granted == ["ann@example.com"]
        assert result.failed == ["bad@example.com"]
        assert set(result.personal_calendars) == {"ann@example.com", "bad@example.com"}
        assert (
            "create_calendar",
            "MultiappOrg · Team · Member · ann@example.com",
        ) in client.calls
        team_org = engine.directory.find("Team")
        assert {member.email for member in team_org.members} == {
            "ann@example.com",
            "bad@example.com",
        }

    async def test_calendar_list_failure_is_ignored(self, engine, client):
        client.failing_list_inserts.add("created_1")
        result = await engine.create_organization("Team", "ann@example.com")
        assert result.general_calendar_id == "created_1"
        assert result.status == "ok"

    async def test_no_collision_check(self, engine, client):
        await engine.create_organization("Team")
        await engine.create_organization("Team")
        assert len(client.remote_calls("create_calendar")) == 2

    async def test_empty_name_is_rejected(self, engine, client):
        with pytest.raises(PreconditionFailed):
            await engine.create_organization("   ", "ann@example.com")
        assert client.calls == []


class TestInviteMembers:
    async def test_reuses_existing_general(self, engine, team):
        result = await engine.invite_members("Team", "ann@example.com")

        assert result.general_calendar_id == "G1"
        assert team.remote_calls("create_calendar") == []
        assert team.remote_calls("set_access_control_entry")[0][1:3] == ("G1", "writer")

    async def test_creates_missing_general(self, engine, client):
        result = await engine.invite_members("Fresh", "ann@example.com")
        assert client.remote_calls("create_calendar") == [
            ("create_calendar", "MultiappOrg · Fresh · General")
        ]
        assert result.general_calendar_id == "created_1"

    async def test_personal_calendars_reused_on_exact_match_only(self, engine, team):
        team.add_calendar("P_ANN", "MultiappOrg · Team · Member · ann@example.com")
        team.add_calendar("P_BOB", "MultiappOrg · Team · Member · Bob@example.org")
        options = OrganizationOptions(create_personal_calendars=True)

        result = await engine.invite_members(
            "Team", "ann@example.com bob@example.org", options
        )

        assert result.personal_calendars["ann@example.com"] == "P_ANN"
        assert result.personal_calendars["bob@example.org"] != "P_BOB"
        assert team.remote_calls("create_calendar") == [
            ("create_calendar", "MultiappOrg · Team · Member · bob@example.org")
        ]

    async def test_requires_a_valid_email(self, engine, client):
        with pytest.raises(PreconditionFailed):
            await engine.invite_members("Team", "nobody")
        assert client.calls == []


# ============================================================================
# Connection, invitations and reconcile
# ============================================================================


class TestConnection:
    async def test_connect_discovers_and_sets_account(self, engine, team):
        engine.selection.select_organization("Team")

        info = await engine.connect()

        assert info.email == "owner@example.com"
        assert get_account_context() == "owner@example.com"
        assert engine.directory.names() == ["Team"]
        assert engine.selection.visible == {"Team::General"}

    async def test_disconnect_then_whoami_is_none(self, engine, client):
        assert (await engine.whoami()).email == "owner@example.com"

        engine.disconnect()

        assert await engine.whoami() is None
        assert not engine.credentials.has_grant()
        assert get_account_context() is None

    async def test_whoami_never_prompts(self, config):
        state = MemoryStateStore()
        consent = CountingConsent()
        consent.release.set()
        credentials = CredentialStore(state, consent)
        client = FakeCalendarClient(credentials)
        engine = SyncEngine(client, state, credentials, config=config)

        assert await engine.whoami() is None
        assert consent.calls == 0
        assert client.calls == []

    async def test_connect_prompts_once(self, config):
        state = MemoryStateStore()
        consent = CountingConsent()
        consent.release.set()
        credentials = CredentialStore(state, consent)
        engine = SyncEngine(FakeCalendarClient(credentials), state, credentials, config=config)

        await engine.connect()
        assert (await engine.whoami()).email == "owner@example.com"

        assert consent.calls == 1


class TestInvitationsThroughEngine:
    async def test_queue_uses_signed_in_sender(self, engine):
        result = await engine.queue_invitations("Team", "ann@example.com")
        assert result.queued[0].sender == "owner@example.com"

    async def test_send_invitation_grants_and_clears(self, engine, team):
        invitation = (await engine.queue_invitations("Team", "ann@example.com")).queued[0]

        result = await engine.send_invitation(invitation.id)

        assert result.granted == ["ann@example.com"]
        assert engine.invitations.pending() == []
        assert team.remote_calls("set_access_control_entry")[0][1:4] == (
            "G1",
            "writer",
            "ann@example.com",
        )


class TestReconcile:
    async def test_reconcile_imports_current_month_and_exports_widget(self, engine, team, state):
        engine.selection.select_organization("Team")

        status = await engine.reconcile(TODAY)

        assert status.kind == "ok"
        assert len(engine.events) == 2
        assert engine.selection.visible == {"Team::General"}
        assert [item["title"] for item in state_get(state, WIDGET_STATE_KEY)] == ["Review"]
        _, _, range_start, range_end = team.remote_calls("list_events")[0]
        assert range_start == datetime(2024, 3, 1, tzinfo=PARIS)
        assert range_end == datetime(2024, 4, 1, tzinfo=PARIS)

    async def test_reconcile_without_token_reports_auth_required_and_never_prompts(
        self, config
    ):
        state = MemoryStateStore()
        consent = CountingConsent()
        consent.release.set()
        credentials = CredentialStore(state, consent)
        client = FakeCalendarClient(credentials)
        client.add_calendar("G1", "MultiappOrg · Team · General")
        engine = SyncEngine(client, state, credentials, config=config)
        engine.selection.select_organization("Team")

        status = await engine.reconcile(TODAY)

        assert status.kind == "auth_required"
        assert consent.calls == 0
        assert client.calls == []
        assert state_get(state, WIDGET_STATE_KEY) == []

    async def test_reconcile_reports_remote_failure(self, engine, client):
        client.list_calendars = AsyncMock(
            side_effect=RemoteUnavailable(status_code=503, message="Backend Error")
        )
        status = await engine.reconcile(TODAY)
        assert status.kind == "failed"
        assert status.error_type == "RemoteUnavailable"

    async def test_reconcile_uses_engine_clock_by_default(self, engine, team):
        engine.selection.select_organization("Team")
        await engine.reconcile()
        assert len(team.remote_calls("list_events")) == 1


class TestLocalEdits:
    def test_add_event_refreshes_widget(self, engine, state):
        engine.selection.set_visible("Team::General")
        event = engine.add_event("Team::General", date(2024, 3, 12), "Standup")
        assert state_get(state, WIDGET_STATE_KEY) == [
            {
                "id": widget_event_id(event.id),
                "title": "Standup",
                "date": "2024-03-12",
                "calendar_key": "Team::General",
                "is_all_day": True,
            }
        ]

    def test_delete_event_refreshes_widget(self, engine, state):
        engine.selection.set_visible("Team::General")
        event = engine.add_event("Team::General", date(2024, 3, 12), "Standup")
        assert engine.delete_event(event.id)
        assert state_get(state, WIDGET_STATE_KEY) == []
