"""Error taxonomy for the orgcal engine and operation-level status mapping.

Every public operation raises exactly once with one of the classes below and
leaves retry decisions to its caller.  ``operation_status()`` turns any of them
into the short, sanitized status a UI or background job can display without
having to know the hierarchy.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict

OperationKind = Literal["ok", "partial", "auth_required", "failed"]

MAX_STATUS_MESSAGE_LENGTH = 200


class OrgCalError(RuntimeError):
    """Base error for every failure raised by the orgcal engine."""


class ConfigError(OrgCalError):
    """Raised when configuration is missing, malformed, or invalid."""


class AuthRequired(OrgCalError):
    """No usable credential is cached and an interactive flow is needed."""


class PreconditionFailed(OrgCalError):
    """Caller-level misuse, e.g. primary import with several organizations selected."""


class RemoteRequestError(OrgCalError):
    """Base error for failed calls to the remote calendar provider."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Remote calendar request failed: {message}")
        else:
            super().__init__(f"Remote calendar request failed ({status_code}): {message}")


class RemoteAuthError(RemoteRequestError):
    """The provider rejected the credential."""


class RemoteUnavailable(RemoteRequestError):
    """Transport failure, timeout, or a retryable non-2xx response."""


class ProviderError(RemoteRequestError):
    """Non-retryable provider failure, or a payload we cannot decode."""


class OperationStatus(BaseModel):
    """User-facing summary of how an operation ended."""

    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    message: str
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == "ok"


def redact_credential_values(message: str) -> str:
    """Redact token-like values from *message* before it is surfaced or logged."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_message(message: str) -> str:
    redacted = redact_credential_values(message)
    return " ".join(redacted.split())[:MAX_STATUS_MESSAGE_LENGTH]


def operation_status(exc: BaseException) -> OperationStatus:
    """Map an exception raised by an engine operation to an ``OperationStatus``.

    ``AuthRequired`` and ``RemoteAuthError`` both mean "ask the user to sign in
    again", so they collapse into ``auth_required``; everything else is a
    whole-operation failure.
    """
    kind: OperationKind
    if isinstance(exc, AuthRequired | RemoteAuthError):
        kind = "auth_required"
    else:
        kind = "failed"
    message = sanitize_message(str(exc)) or type(exc).__name__
    return OperationStatus(kind=kind, message=message, error_type=type(exc).__name__)
