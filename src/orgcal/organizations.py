"""Organization discovery from the remote calendar list.

An organization is not a provider concept: it is recovered from calendar
display names following a reserved grammar::

    "<prefix><org> · General"
    "<prefix><org> · Member · <email>"

``parse_organization_label`` is the only place that knows this grammar, so it
can later be replaced by a structured calendar property without touching
discovery or the merge logic.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from orgcal.config import DEFAULT_ORGANIZATION_PREFIX
from orgcal.google_client import RemoteCalendar, RemoteCalendarClient

logger = logging.getLogger(__name__)

LABEL_SEPARATOR = "·"
GENERAL_ROLE_WORD = "General"
MEMBER_ROLE_WORD = "Member"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_EMAIL_SPLIT_PATTERN = re.compile(r"[\s,;]+")

LabelRole = Literal["general", "member", "unknown"]


class OrganizationLabel(BaseModel):
    """Organization and role recovered from one calendar display name."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: LabelRole
    email: str | None = None


class Member(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    calendar_id: str


class Organization(BaseModel):
    name: str
    general_calendar_id: str | None = None
    members: list[Member] = Field(default_factory=list)
    is_owner: bool = False


class Directory(BaseModel):
    """Result of a discovery pass, partitioned by ownership."""

    owned: list[Organization] = Field(default_factory=list)
    shared: list[Organization] = Field(default_factory=list)

    def all(self) -> list[Organization]:
        return [*self.owned, *self.shared]

    def find(self, name: str) -> Organization | None:
        for organization in self.all():
            if organization.name == name:
                return organization
        return None

    def names(self) -> list[str]:
        return [organization.name for organization in self.all()]


class OrganizationOptions(BaseModel):
    """Switches for organization creation and member invitation."""

    model_config = ConfigDict(frozen=True)

    create_personal_calendars: bool = False
    notify_by_email: bool = True


class OrganizationResult(BaseModel):
    """Outcome of a create or invite run; ``failed`` holds the addresses whose grant failed."""

    name: str
    general_calendar_id: str
    granted: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    personal_calendars: dict[str, str] = Field(default_factory=dict)

    @property
    def status(self) -> Literal["ok", "partial"]:
        return "partial" if self.failed else "ok"


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_PATTERN.match(value))


def split_emails(raw: str | Iterable[str] | None) -> list[str]:
    """Split comma/semicolon/space separated input and keep address-shaped entries."""
    if raw is None:
        return []
    text = raw if isinstance(raw, str) else " ".join(raw)
    return [part for part in _EMAIL_SPLIT_PATTERN.split(text) if part and is_valid_email(part)]


def parse_organization_label(
    summary: str | None,
    prefix: str = DEFAULT_ORGANIZATION_PREFIX,
) -> OrganizationLabel | None:
    """Parse a calendar display name; ``None`` when it is not an organization calendar."""
    text = summary or ""
    if not text.startswith(prefix):
        return None

    parts = [part.strip() for part in text[len(prefix) :].split(LABEL_SEPARATOR)]
    name = parts[0]
    if not name:
        return None

    if len(parts) >= 2 and parts[1].lower() == GENERAL_ROLE_WORD.lower():
        return OrganizationLabel(name=name, role="general")
    if len(parts) >= 3 and parts[1].lower() == MEMBER_ROLE_WORD.lower():
        # An address containing the separator was split above; put it back.
        email = f" {LABEL_SEPARATOR} ".join(parts[2:]).strip()
        if email:
            return OrganizationLabel(name=name, role="member", email=email)
    return OrganizationLabel(name=name, role="unknown")


def general_calendar_summary(name: str, prefix: str = DEFAULT_ORGANIZATION_PREFIX) -> str:
    return f"{prefix}{name} {LABEL_SEPARATOR} {GENERAL_ROLE_WORD}"


def member_calendar_summary(
    name: str, email: str, prefix: str = DEFAULT_ORGANIZATION_PREFIX
) -> str:
    return f"{prefix}{name} {LABEL_SEPARATOR} {MEMBER_ROLE_WORD} {LABEL_SEPARATOR} {email}"


def group_organizations(
    calendars: Iterable[RemoteCalendar],
    prefix: str = DEFAULT_ORGANIZATION_PREFIX,
) -> Directory:
    """Group calendar-list entries into organizations and partition by ownership."""
    groups: dict[str, Organization] = {}
    for calendar in calendars:
        label = parse_organization_label(calendar.summary, prefix)
        if label is None:
            continue
        organization = groups.setdefault(label.name, Organization(name=label.name))
        if calendar.is_owner:
            organization.is_owner = True
        if label.role == "general":
            if organization.general_calendar_id is not None:
                logger.warning(
                    "Organization %r has several General calendars; keeping %s",
                    label.name,
                    calendar.id,
                )
            organization.general_calendar_id = calendar.id
        elif label.role == "member" and label.email:
            organization.members.append(Member(email=label.email, calendar_id=calendar.id))

    return Directory(
        owned=[org for org in groups.values() if org.is_owner],
        shared=[org for org in groups.values() if not org.is_owner],
    )


class OrganizationDirectory:
    """Discovers organizations through a :class:`RemoteCalendarClient`.

    Discovery only reads; it never creates or shares anything.
    """

    def __init__(
        self,
        client: RemoteCalendarClient,
        prefix: str = DEFAULT_ORGANIZATION_PREFIX,
    ) -> None:
        self._client = client
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    async def list_calendars(self, *, interactive: bool = False) -> list[RemoteCalendar]:
        return await self._client.list_calendars(interactive=interactive)

    async def discover(self, *, interactive: bool = False) -> Directory:
        calendars = await self.list_calendars(interactive=interactive)
        directory = group_organizations(calendars, self._prefix)
        logger.info(
            "Discovered %d owned and %d shared organizations",
            len(directory.owned),
            len(directory.shared),
        )
        return directory
