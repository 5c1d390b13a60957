"""Sync engine: organization discovery, fetch-and-merge, and sharing workflows.

One :class:`SyncEngine` owns every piece of agenda state (directory, selection,
credentials, event store, invitation queue).  Data flows one way on import:
remote client -> engine -> local event store.  Local edits never go back to
the provider.

Remote fetches inside one import run sequentially; the merge only starts once
every fetch returned, and is itself a synchronous call into
:class:`~orgcal.events.LocalEventStore`.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Awaitable, Callable, Collection, Iterable, Mapping
from datetime import date, datetime, time, timedelta

from pydantic import BaseModel, ConfigDict, ValidationError

from orgcal.config import AgendaConfig
from orgcal.core.logging import configure_logging_from_config, set_account_context
from orgcal.core.state import JsonFileStateStore, StateStore, state_get, state_set
from orgcal.credentials import AuthorizationCodeConsent, CredentialStore
from orgcal.errors import (
    AuthRequired,
    OperationStatus,
    OrgCalError,
    PreconditionFailed,
    ProviderError,
    RemoteRequestError,
    RemoteUnavailable,
    operation_status,
)
from orgcal.events import (
    GENERAL_CALENDAR_LABEL,
    UNTITLED_EVENT_TITLE,
    Event,
    EventCandidate,
    LocalEventStore,
    general_calendar_key,
    member_calendar_key,
    normalize_title,
)
from orgcal.google_client import (
    GoogleCalendarClient,
    RemoteCalendar,
    RemoteCalendarClient,
    RemoteEvent,
    UserInfo,
)
from orgcal.invitations import InvitationQueue, QueueResult
from orgcal.organizations import (
    Directory,
    Organization,
    OrganizationDirectory,
    OrganizationOptions,
    OrganizationResult,
    general_calendar_summary,
    member_calendar_summary,
    split_emails,
)
from orgcal.selection import Selection
from orgcal.widget import export_agenda_snapshot

logger = logging.getLogger(__name__)

ORGS_STATE_KEY = "agenda:orgs:v1"
PRIMARY_CALENDAR_ID = "primary"
PRIMARY_REMOTE_ID_PREFIX = "primary:"
MEMBER_ACL_ROLE = "writer"


def calendar_color(key: str) -> str:
    """Deterministic ``hsl()`` color for a calendar key."""
    h = 0
    for char in key:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    return f"hsl({h % 360}deg 70% 45%)"


def month_range(year: int, month: int) -> tuple[date, date]:
    """First and last day of a month."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


class LogicalCalendar(BaseModel):
    """One entry of the active-calendar list (General or a member's calendar)."""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    color: str
    remote_calendar_id: str | None = None

    @property
    def display_only(self) -> bool:
        return self.remote_calendar_id is None


def _organization_calendars(organization: Organization) -> list[LogicalCalendar]:
    general_key = general_calendar_key(organization.name)
    entries = [
        LogicalCalendar(
            key=general_key,
            label=f"{organization.name} · {GENERAL_CALENDAR_LABEL}",
            color=calendar_color(general_key),
            remote_calendar_id=organization.general_calendar_id,
        )
    ]
    for member in organization.members:
        key = member_calendar_key(organization.name, member.email)
        entries.append(
            LogicalCalendar(
                key=key,
                label=f"{organization.name} · {member.email}",
                color=calendar_color(key),
                remote_calendar_id=member.calendar_id,
            )
        )
    return entries


class SyncEngine:
    """Engine context for one signed-in agenda."""

    def __init__(
        self,
        client: RemoteCalendarClient,
        state: StateStore,
        credentials: CredentialStore,
        *,
        config: AgendaConfig | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._config = config or AgendaConfig()
        self._client = client
        self._state = state
        self._credentials = credentials
        self._today = today or (lambda: datetime.now(self._config.zone).date())
        self._organizations = OrganizationDirectory(client, self._config.organization_prefix)
        self._directory = self._load_cached_directory()

        self.events = LocalEventStore(state)
        self.selection = Selection(state)
        self.invitations = InvitationQueue(
            state,
            self.selection,
            credentials=credentials,
            invite_members=self.invite_members,
        )

    @classmethod
    def from_config(
        cls,
        config: AgendaConfig,
        *,
        authorize: Callable[[str], Awaitable[Mapping[str, str]]] | None = None,
        state: StateStore | None = None,
        setup_logging: bool = True,
    ) -> SyncEngine:
        """Wire the Google-backed engine described by *config*.

        Without *authorize* (or without client credentials in the config) the
        engine only ever uses a token cached by an earlier session.  With
        *setup_logging* the ``[agenda.logging]`` section is applied to the
        process-wide logging setup.
        """
        if setup_logging:
            configure_logging_from_config(config.logging)
        store = state if state is not None else JsonFileStateStore(config.state_path)
        consent = None
        if authorize is not None and config.google.client_id and config.google.client_secret:
            consent = AuthorizationCodeConsent(
                client_id=config.google.client_id,
                client_secret=config.google.client_secret,
                redirect_uri=config.google.redirect_uri,
                scopes=config.google.scopes,
                authorize=authorize,
                timeout=config.http_timeout_seconds,
            )
        credentials = CredentialStore(store, consent)
        client = GoogleCalendarClient(
            credentials,
            timeout=config.http_timeout_seconds,
            max_events=config.sync.max_events_per_calendar,
            calendar_page_size=config.sync.calendar_list_page_size,
        )
        return cls(client, store, credentials, config=config)

    async def aclose(self) -> None:
        await self._client.shutdown()

    @property
    def config(self) -> AgendaConfig:
        return self._config

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    @property
    def directory(self) -> Directory:
        return self._directory

    @property
    def owned(self) -> list[Organization]:
        return list(self._directory.owned)

    @property
    def shared(self) -> list[Organization]:
        return list(self._directory.shared)

    def _load_cached_directory(self) -> Directory:
        raw = state_get(self._state, ORGS_STATE_KEY)
        if raw is None:
            return Directory()
        try:
            return Directory.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed organization cache")
            return Directory()

    async def discover(self, *, interactive: bool = False) -> Directory:
        """Re-derive organizations from the calendar list and refresh the cache."""
        directory = await self._organizations.discover(interactive=interactive)
        self._directory = directory
        state_set(self._state, ORGS_STATE_KEY, directory.model_dump(mode="json"))
        return directory

    def active_calendars(
        self, selected_org_names: Collection[str] | None = None
    ) -> list[LogicalCalendar]:
        """Logical calendars of the selected organizations, owned first then shared."""
        selected = (
            self.selection.selected_organizations
            if selected_org_names is None
            else set(selected_org_names)
        )
        entries: list[LogicalCalendar] = []
        for organization in [*self._directory.owned, *self._directory.shared]:
            if organization.name in selected:
                entries.extend(_organization_calendars(organization))
        return entries

    def ensure_default_visibility(self) -> bool:
        return self.selection.ensure_default_visibility(
            entry.key for entry in self.active_calendars()
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> UserInfo:
        """Interactive sign-in, then identity lookup and discovery."""
        await self._credentials.acquire(interactive=True)
        info = await self._client.get_user_info(interactive=True)
        set_account_context(info.email)
        await self.discover(interactive=True)
        self.ensure_default_visibility()
        logger.info("Connected to Google Calendar")
        return info

    def disconnect(self) -> None:
        self._credentials.invalidate()
        set_account_context(None)
        logger.info("Disconnected from Google Calendar")

    async def whoami(self) -> UserInfo | None:
        """Signed-in principal, or ``None`` when not connected or unreachable.

        Never prompts.
        """
        if not self._credentials.is_connected():
            return None
        try:
            info = await self._client.get_user_info(interactive=False)
        except (AuthRequired, RemoteRequestError) as exc:
            logger.warning("User info lookup failed: %s", exc)
            return None
        set_account_context(info.email)
        return info

    # ------------------------------------------------------------------
    # Fetch-and-merge
    # ------------------------------------------------------------------

    def _range_bounds(self, range_start: date, range_end: date) -> tuple[datetime, datetime]:
        if range_end < range_start:
            raise PreconditionFailed(
                f"Import range ends ({range_end.isoformat()}) before it starts "
                f"({range_start.isoformat()})"
            )
        zone = self._config.zone
        start_at = datetime.combine(range_start, time.min, tzinfo=zone)
        end_at = datetime.combine(range_end + timedelta(days=1), time.min, tzinfo=zone)
        return start_at, end_at

    def _candidate(self, calendar_key: str, event: RemoteEvent, remote_id: str) -> EventCandidate:
        if event.start_date is not None:
            on = event.start_date
        elif event.start_at is not None:
            on = event.start_at.astimezone(self._config.zone).date()
        else:
            raise ProviderError(status_code=None, message=f"Event {event.id!r} has no start")
        return EventCandidate(
            calendar_key=calendar_key,
            date=on,
            title=normalize_title(event.summary) or UNTITLED_EVENT_TITLE,
            remote_id=remote_id,
        )

    async def import_range(
        self,
        selected_org_names: Collection[str] | None,
        range_start: date,
        range_end: date,
        interactive: bool = False,
    ) -> list[Event]:
        """Fetch the selected organizations' calendars and merge new events.

        *selected_org_names* of ``None`` means the persisted selection.  The
        range covers whole local days, both ends inclusive.  Returns the
        events that were appended.
        """
        start_at, end_at = self._range_bounds(range_start, range_end)
        targets = [
            entry
            for entry in self.active_calendars(selected_org_names)
            if entry.remote_calendar_id is not None
        ]

        candidates: list[EventCandidate] = []
        for entry in targets:
            remote_events = await self._client.list_events(
                entry.remote_calendar_id, start_at, end_at, interactive=interactive
            )
            candidates.extend(
                self._candidate(entry.key, remote_event, remote_event.id)
                for remote_event in remote_events
            )

        logger.info(
            "Fetched %d remote event(s) from %d calendar(s) for %s..%s",
            len(candidates),
            len(targets),
            range_start.isoformat(),
            range_end.isoformat(),
        )
        return self.events.merge(candidates)

    async def import_primary(
        self,
        range_start: date,
        range_end: date,
        interactive: bool = False,
    ) -> list[Event]:
        """Copy the user's primary calendar into the selected organization's General."""
        selected = sorted(self.selection.selected_organizations)
        if len(selected) != 1:
            raise PreconditionFailed(
                f"Primary import needs exactly one selected organization, got {len(selected)}"
            )
        name = selected[0]
        organization = self._directory.find(name)
        if organization is None or not organization.general_calendar_id:
            raise PreconditionFailed(f"Organization {name!r} has no General calendar")

        start_at, end_at = self._range_bounds(range_start, range_end)
        remote_events = await self._client.list_events(
            PRIMARY_CALENDAR_ID, start_at, end_at, interactive=interactive
        )
        key = general_calendar_key(name)
        return self.events.merge(
            self._candidate(key, remote_event, f"{PRIMARY_REMOTE_ID_PREFIX}{remote_event.id}")
            for remote_event in remote_events
        )

    async def reconcile(self, today: date | None = None) -> OperationStatus:
        """Non-interactive refresh of the month containing *today*.

        Operation failures come back as the returned status instead of being
        raised; the widget snapshot is refreshed either way.
        """
        today = today or self._today()
        range_start, range_end = month_range(today.year, today.month)
        try:
            await self.discover(interactive=False)
            appended = await self.import_range(None, range_start, range_end, interactive=False)
        except OrgCalError as exc:
            status = operation_status(exc)
            logger.warning("Reconcile ended with %s: %s", status.kind, status.message)
        else:
            self.ensure_default_visibility()
            status = OperationStatus(
                kind="ok", message=f"Imported {len(appended)} new event(s)"
            )
        self.export_widget_snapshot(today)
        return status

    # ------------------------------------------------------------------
    # Organization creation and sharing
    # ------------------------------------------------------------------

    async def _add_to_calendar_list(self, calendar_id: str, interactive: bool) -> None:
        try:
            await self._client.add_calendar_to_user_list(calendar_id, interactive=interactive)
        except (RemoteUnavailable, ProviderError) as exc:
            # Usually "already in the list".
            logger.warning("Could not add calendar %s to the calendar list: %s", calendar_id, exc)

    async def _create_listed_calendar(self, summary: str, interactive: bool) -> RemoteCalendar:
        created = await self._client.create_calendar(summary, interactive=interactive)
        await self._add_to_calendar_list(created.id, interactive)
        return created

    async def _grant(
        self, calendar_id: str, email: str, options: OrganizationOptions, interactive: bool
    ) -> bool:
        try:
            await self._client.set_access_control_entry(
                calendar_id,
                MEMBER_ACL_ROLE,
                email,
                options.notify_by_email,
                interactive=interactive,
            )
        except (RemoteUnavailable, ProviderError) as exc:
            logger.warning("Granting %s on %s failed: %s", email, calendar_id, exc)
            return False
        return True

    async def _share_with_members(
        self,
        name: str,
        general_calendar_id: str,
        emails: Iterable[str],
        options: OrganizationOptions,
        existing: Mapping[str, RemoteCalendar],
        interactive: bool,
    ) -> OrganizationResult:
        result = OrganizationResult(name=name, general_calendar_id=general_calendar_id)
        prefix = self._organizations.prefix
        for email in emails:
            ok = await self._grant(general_calendar_id, email, options, interactive)

            if options.create_personal_calendars:
                summary = member_calendar_summary(name, email, prefix)
                personal = existing.get(summary)
                try:
                    if personal is None:
                        personal = await self._create_listed_calendar(summary, interactive)
                except (RemoteUnavailable, ProviderError) as exc:
                    logger.warning("Creating the personal calendar of %s failed: %s", email, exc)
                    ok = False
                else:
                    result.personal_calendars[email] = personal.id
                    ok = await self._grant(personal.id, email, options, interactive) and ok

            (result.granted if ok else result.failed).append(email)
        return result

    async def create_organization(
        self,
        name: str,
        member_emails: str | Iterable[str] | None = None,
        options: OrganizationOptions | None = None,
        *,
        interactive: bool = True,
    ) -> OrganizationResult:
        """Create a new organization and share it with *member_emails*.

        No collision check: running it twice creates a second General calendar.
        """
        name = (name or "").strip()
        if not name:
            raise PreconditionFailed("Organization name must not be empty")
        options = options or OrganizationOptions()
        emails = split_emails(member_emails)

        general = await self._create_listed_calendar(
            general_calendar_summary(name, self._organizations.prefix), interactive
        )
        result = await self._share_with_members(
            name, general.id, emails, options, {}, interactive
        )
        logger.info(
            "Created organization %r (%d granted, %d failed)",
            name,
            len(result.granted),
            len(result.failed),
        )
        await self.discover(interactive=interactive)
        return result

    async def invite_members(
        self,
        name: str,
        member_emails: str | Iterable[str] | None,
        options: OrganizationOptions | None = None,
        *,
        interactive: bool = True,
    ) -> OrganizationResult:
        """Share an organization with *member_emails*, creating it if needed.

        Calendars are reused only on an exact display-name match.
        """
        name = (name or "").strip()
        if not name:
            raise PreconditionFailed("Organization name must not be empty")
        emails = split_emails(member_emails)
        if not emails:
            raise PreconditionFailed("At least one valid email address is required")
        options = options or OrganizationOptions()

        existing: dict[str, RemoteCalendar] = {}
        for remote in await self._organizations.list_calendars(interactive=interactive):
            existing.setdefault(remote.summary, remote)

        general_summary = general_calendar_summary(name, self._organizations.prefix)
        general = existing.get(general_summary)
        if general is None:
            general = await self._create_listed_calendar(general_summary, interactive)

        result = await self._share_with_members(
            name, general.id, emails, options, existing, interactive
        )
        logger.info(
            "Invited members to %r (%d granted, %d failed)",
            name,
            len(result.granted),
            len(result.failed),
        )
        await self.discover(interactive=interactive)
        return result

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    async def queue_invitations(
        self,
        organization: str,
        emails: str | Iterable[str] | None,
        note: str | None = None,
    ) -> QueueResult:
        info = await self.whoami()
        return self.invitations.queue(
            organization, emails, note=note, sender=info.email if info else None
        )

    async def send_invitation(
        self, invitation_id: str, options: OrganizationOptions | None = None
    ) -> OrganizationResult:
        return await self.invitations.send_real(invitation_id, options)

    # ------------------------------------------------------------------
    # Local edits and widget
    # ------------------------------------------------------------------

    def add_event(self, calendar_key: str, on: date, title: str) -> Event:
        event = self.events.add(calendar_key, on, title)
        self.export_widget_snapshot()
        return event

    def edit_event(self, event_id: str, title: str) -> Event | None:
        event = self.events.edit_title(event_id, title)
        if event is not None:
            self.export_widget_snapshot()
        return event

    def delete_event(self, event_id: str) -> bool:
        deleted = self.events.delete(event_id)
        if deleted:
            self.export_widget_snapshot()
        return deleted

    def visible_events(self) -> list[Event]:
        return self.events.visible_events(self.selection.visible)

    def export_widget_snapshot(self, today: date | None = None) -> list[dict]:
        return export_agenda_snapshot(
            self._state,
            self.events,
            self.selection.visible,
            today or self._today(),
            self._config.widget.limit,
        )
