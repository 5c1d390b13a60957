"""Short-lived access-token lifecycle for the remote calendar provider.

The :class:`CredentialStore` caches exactly one access token plus its expiry,
in memory and in the key-value store so it survives a restart.  It never holds
a refresh token or any other long-lived secret: once the access token expires
the user has to go through the consent flow again.

Background callers always use ``acquire(interactive=False)``, which either
returns a cached token or raises :class:`~orgcal.errors.AuthRequired`.  Only
direct user actions pass ``interactive=True``; concurrent interactive callers
share a single in-flight consent flow so the user never sees two prompts.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from orgcal.core.state import StateStore, state_get, state_set
from orgcal.errors import AuthRequired, RemoteAuthError, RemoteUnavailable

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

TOKEN_STATE_KEY = "agenda:gcal:token"
GRANTED_STATE_KEY = "agenda:gcal:granted"

# A token this close to expiry is never handed out.
EXPIRY_SAFETY_MARGIN = timedelta(seconds=30)
MIN_TOKEN_TTL_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3600

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Credential(BaseModel):
    """Cached access token and the instant the provider says it expires."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    def is_usable(self, now: datetime) -> bool:
        return now < self.expires_at - EXPIRY_SAFETY_MARGIN

    def __repr__(self) -> str:
        return f"Credential(access_token=<REDACTED>, expires_at={self.expires_at.isoformat()!r})"

    __str__ = __repr__


class TokenGrant(BaseModel):
    """What a consent flow hands back: a token and its reported time-to-live."""

    access_token: str = Field(min_length=1)
    expires_in: Any = None

    def __repr__(self) -> str:
        return f"TokenGrant(access_token=<REDACTED>, expires_in={self.expires_in!r})"


class ConsentFlow(Protocol):
    """Interactive consent with the identity provider."""

    def __call__(self) -> Awaitable[TokenGrant]: ...


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


class CredentialStore:
    """Holds the one cached access token and coalesces interactive acquisition."""

    def __init__(
        self,
        state: StateStore,
        consent: ConsentFlow | None = None,
        *,
        clock: Clock = _utcnow,
    ) -> None:
        self._state = state
        self._consent = consent
        self._clock = clock
        self._credential: Credential | None = None
        self._inflight: asyncio.Task[str] | None = None

    async def acquire(self, interactive: bool = False) -> str:
        """Return a usable access token.

        Raises
        ------
        AuthRequired
            When no usable token is cached and *interactive* is false, or no
            consent flow is configured.
        """
        cached = self._usable_credential()
        if cached is not None:
            return cached.access_token

        if not interactive:
            raise AuthRequired("No usable access token is cached; sign-in is required")

        if self._consent is None:
            raise AuthRequired("No interactive consent flow is configured")

        if self._inflight is None:
            logger.info("Starting interactive consent flow")
            self._inflight = asyncio.ensure_future(self._run_consent(self._consent))
            self._inflight.add_done_callback(self._clear_inflight)
        else:
            logger.debug("Joining in-flight consent flow")
        # shield: a cancelled waiter must not cancel the prompt other callers wait on.
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task[str]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _run_consent(self, consent: ConsentFlow) -> str:
        grant = await consent()
        ttl_seconds = max(_coerce_expires_in_seconds(grant.expires_in), MIN_TOKEN_TTL_SECONDS)
        credential = Credential(
            access_token=grant.access_token.strip(),
            expires_at=self._clock() + timedelta(seconds=ttl_seconds),
        )
        self._credential = credential
        state_set(self._state, TOKEN_STATE_KEY, credential.model_dump(mode="json"))
        state_set(self._state, GRANTED_STATE_KEY, True)
        logger.info("Access token acquired (expires_at=%s)", credential.expires_at.isoformat())
        return credential.access_token

    def invalidate(self) -> None:
        """Forget the cached token and the granted flag."""
        self._credential = None
        state_set(self._state, TOKEN_STATE_KEY, None)
        state_set(self._state, GRANTED_STATE_KEY, False)
        logger.info("Cached access token invalidated")

    def is_connected(self) -> bool:
        return self._usable_credential() is not None

    def has_grant(self) -> bool:
        return state_get(self._state, GRANTED_STATE_KEY) is True

    @property
    def consent_in_flight(self) -> bool:
        return self._inflight is not None

    def _usable_credential(self) -> Credential | None:
        now = self._clock()
        if self._credential is not None and self._credential.is_usable(now):
            return self._credential

        stored = self._load_persisted()
        if stored is not None and stored.is_usable(now):
            self._credential = stored
            return stored
        return None

    def _load_persisted(self) -> Credential | None:
        raw = state_get(self._state, TOKEN_STATE_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return Credential.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed persisted credential")
            return None


# ---------------------------------------------------------------------------
# Authorization-code consent flow
# ---------------------------------------------------------------------------

Authorizer = Callable[[str], Awaitable[Mapping[str, str]]]

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. Sign-in cancelled.",
    "invalid_request": "The sign-in request was malformed. Please try again.",
    "unauthorized_client": "This application is not authorized to use Google sign-in.",
    "invalid_scope": "One or more requested scopes are invalid or not permitted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google sign-in is temporarily unavailable.",
}


def _sanitize_provider_error(error: str) -> str:
    return _KNOWN_PROVIDER_ERRORS.get(error, "The sign-in failed. Please try again.")


class AuthorizationCodeConsent:
    """OAuth 2.0 authorization-code consent against Google.

    *authorize* is supplied by the host: it receives the authorization URL,
    shows it to the user (browser tab, popup, embedded view) and returns the
    query parameters Google redirected back with.  Only the access token of
    the exchange is kept; a refresh token, if Google sends one, is dropped.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: str,
        authorize: Authorizer,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._authorize = authorize
        self._http_client = http_client
        self._timeout = timeout

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": self._scopes,
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def __call__(self) -> TokenGrant:
        state = secrets.token_urlsafe(32)
        callback = await self._authorize(self.authorization_url(state))

        error = callback.get("error")
        if error:
            logger.warning("Consent flow returned provider error %r", error)
            raise RemoteAuthError(status_code=None, message=_sanitize_provider_error(error))

        if not secrets.compare_digest(str(callback.get("state") or ""), state):
            raise RemoteAuthError(status_code=None, message="Consent callback state mismatch")

        code = callback.get("code")
        if not code:
            raise RemoteAuthError(status_code=None, message="Consent callback carried no code")

        payload = await self._exchange_code(code)
        try:
            return TokenGrant(
                access_token=payload.get("access_token") or "",
                expires_in=payload.get("expires_in"),
            )
        except ValidationError as exc:
            raise RemoteAuthError(
                status_code=None, message="Token response is missing a non-empty access_token"
            ) from exc

    async def _exchange_code(self, code: str) -> dict[str, Any]:
        form = {
            "code": code,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": self._redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(GOOGLE_TOKEN_URL, data=form)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(GOOGLE_TOKEN_URL, data=form)
        except httpx.HTTPError as exc:
            raise RemoteUnavailable(
                status_code=None, message=f"Network error during token exchange: {exc}"
            ) from exc

        if response.status_code >= 500:
            raise RemoteUnavailable(
                status_code=response.status_code, message="Token endpoint is unavailable"
            )
        if response.status_code != 200:
            # Body may echo the code back; only the status is surfaced.
            raise RemoteAuthError(
                status_code=response.status_code, message="Token exchange was rejected"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteAuthError(
                status_code=response.status_code, message="Token endpoint returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteAuthError(
                status_code=response.status_code, message="Token endpoint returned a non-object"
            )
        return payload
