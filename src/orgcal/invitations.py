"""Local invitation queue and invitation notification log.

Queued invitations are purely local bookkeeping: queueing, accepting or
declining never touches remote ACLs.  ``send_real`` is the only path that
turns an invitation into a real calendar share, and it goes through the same
upsert the "invite members" action uses.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer

from orgcal.core.state import StateStore, state_get_list, state_set
from orgcal.credentials import CredentialStore
from orgcal.errors import PreconditionFailed
from orgcal.organizations import OrganizationOptions, OrganizationResult, split_emails
from orgcal.selection import Selection

logger = logging.getLogger(__name__)

INVITES_STATE_KEY = "agenda:org:invites:v1"
INVITE_NOTIFICATIONS_STATE_KEY = "agenda:org:invite-notifs:v1"

InvitationStatus = Literal["pending", "accepted", "declined"]
InviteMembers = Callable[[str, list[str], OrganizationOptions], Awaitable[OrganizationResult]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_epoch_millis(value: datetime) -> int:
    # Browser entries carry ``createdAt`` as epoch milliseconds.
    return round(value.timestamp() * 1000)


class Invitation(BaseModel):
    """A queued invitation, stored with the browser agenda's field names."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    organization: str = Field(alias="org")
    email: str
    sender: str | None = Field(default=None, alias="from")
    status: InvitationStatus = "pending"
    note: str | None = None
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")

    @field_serializer("created_at")
    def _epoch_millis(self, value: datetime) -> int:
        return _to_epoch_millis(value)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class InvitationNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    organization: str = Field(alias="org")
    email: str
    sender: str | None = Field(default=None, alias="from")
    status: InvitationStatus
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")

    @field_serializer("created_at")
    def _epoch_millis(self, value: datetime) -> int:
        return _to_epoch_millis(value)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class QueueResult(BaseModel):
    queued: list[Invitation] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.queued)


def _load_models(state: StateStore, key: str, model: type[BaseModel]) -> list:
    items = []
    for raw in state_get_list(state, key):
        try:
            items.append(model.model_validate(raw))
        except ValidationError:
            logger.warning("Dropping malformed entry under %s", key)
    return items


class InvitationQueue:
    """Pending invitations plus a newest-first notification log."""

    def __init__(
        self,
        state: StateStore,
        selection: Selection,
        *,
        credentials: CredentialStore,
        invite_members: InviteMembers,
    ) -> None:
        self._state = state
        self._selection = selection
        self._credentials = credentials
        self._invite_members = invite_members

    def pending(self) -> list[Invitation]:
        return _load_models(self._state, INVITES_STATE_KEY, Invitation)

    def notifications(self) -> list[InvitationNotification]:
        return _load_models(self._state, INVITE_NOTIFICATIONS_STATE_KEY, InvitationNotification)

    def _save_pending(self, invitations: list[Invitation]) -> None:
        state_set(
            self._state,
            INVITES_STATE_KEY,
            [invitation.to_storage() for invitation in invitations],
        )

    def _push_notifications(self, entries: Iterable[InvitationNotification]) -> None:
        newest_first = list(reversed(list(entries)))
        state_set(
            self._state,
            INVITE_NOTIFICATIONS_STATE_KEY,
            [entry.to_storage() for entry in [*newest_first, *self.notifications()]],
        )

    def queue(
        self,
        organization: str,
        emails: str | Iterable[str] | None,
        note: str | None = None,
        sender: str | None = None,
    ) -> QueueResult:
        """Queue one pending invitation per valid address.  No remote call."""
        name = (organization or "").strip()
        addresses = split_emails(emails)
        if not name:
            raise PreconditionFailed("Organization name is required to queue invitations")
        if not addresses:
            raise PreconditionFailed("At least one valid email address is required")

        queued = [
            Invitation(
                organization=name,
                email=address,
                sender=sender,
                note=(note or "").strip() or None,
            )
            for address in addresses
        ]
        self._save_pending([*self.pending(), *queued])
        self._push_notifications(
            InvitationNotification(
                organization=invitation.organization,
                email=invitation.email,
                sender=sender,
                status="pending",
            )
            for invitation in queued
        )
        logger.info("Queued %d invitation(s) for organization %r", len(queued), name)
        return QueueResult(queued=queued)

    def _take(self, invitation_id: str) -> tuple[Invitation, list[Invitation]]:
        invitations = self.pending()
        for invitation in invitations:
            if invitation.id == invitation_id:
                return invitation, [item for item in invitations if item.id != invitation_id]
        raise PreconditionFailed(f"Unknown invitation {invitation_id!r}")

    def respond(self, invitation_id: str, accept: bool) -> Invitation:
        """Accept or decline locally; accepting ticks the organization."""
        invitation, remaining = self._take(invitation_id)
        status: InvitationStatus = "accepted" if accept else "declined"
        if accept:
            self._selection.select_organization(invitation.organization)
        self._save_pending(remaining)
        self._push_notifications(
            [
                InvitationNotification(
                    organization=invitation.organization,
                    email=invitation.email,
                    sender=invitation.sender,
                    status=status,
                )
            ]
        )
        return invitation.model_copy(update={"status": status})

    def dismiss_notification(self, notification_id: str) -> bool:
        entries = self.notifications()
        remaining = [entry for entry in entries if entry.id != notification_id]
        if len(remaining) == len(entries):
            return False
        state_set(
            self._state,
            INVITE_NOTIFICATIONS_STATE_KEY,
            [entry.to_storage() for entry in remaining],
        )
        return True

    async def send_real(
        self,
        invitation_id: str,
        options: OrganizationOptions | None = None,
    ) -> OrganizationResult:
        """Share the organization's calendars with the invited address for real.

        The invitation is removed only once the grant for its address succeeded;
        a failed grant leaves it pending so the user can try again.
        """
        invitation, _ = self._take(invitation_id)
        await self._credentials.acquire(interactive=True)
        result = await self._invite_members(
            invitation.organization,
            [invitation.email],
            options or OrganizationOptions(),
        )
        if invitation.email in result.granted:
            # Re-read: the upsert awaited, the queue may have changed meanwhile.
            self._save_pending([item for item in self.pending() if item.id != invitation_id])
            logger.info("Invitation %s sent to %s", invitation_id, invitation.email)
        else:
            logger.warning(
                "Invitation %s kept pending: grant for %s failed", invitation_id, invitation.email
            )
        return result
