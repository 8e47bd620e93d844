"""Claude credentials: a static API key or a refreshable OAuth token triad."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import httpx
from dotenv import set_key

logger = logging.getLogger(__name__)

REFRESH_LOOKAHEAD_SECONDS = 300

TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"

API_KEY_VAR = "ANTHROPIC_API_KEY"
ACCESS_TOKEN_VAR = "CLAUDE_ACCESS_TOKEN"
REFRESH_TOKEN_VAR = "CLAUDE_REFRESH_TOKEN"
EXPIRES_VAR = "CLAUDE_TOKEN_EXPIRES"
# Variable the claude CLI reads an OAuth access token from.
OAUTH_TOKEN_ENV = "CLAUDE_CODE_OAUTH_TOKEN"


class RefreshError(Exception):
    """Token refresh failed; the previous tokens are still in place.

    ``cause`` is one of ``"network"``, ``"invalid_grant"`` or ``"server"``.
    """

    def __init__(self, message: str, cause: str = "server"):
        super().__init__(message)
        self.cause = cause


class NotConfiguredError(Exception):
    """Neither an API key nor an OAuth token is configured."""


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> TokenGrant: ...


class CredentialStore(Protocol):
    def update_values(self, values: dict[str, str]) -> bool: ...


@dataclass
class Credentials:
    """Exactly one of ``api_key`` or the OAuth triad is set."""

    api_key: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch seconds

    @property
    def is_oauth(self) -> bool:
        return self.api_key is None and self.access_token is not None

    @classmethod
    def from_env(cls, env: dict[str, str]) -> Optional["Credentials"]:
        """Pick the credential form from environment values.

        An API key takes precedence over OAuth tokens. Returns None when
        neither is configured.
        """
        api_key = env.get(API_KEY_VAR)
        if api_key:
            return cls(api_key=api_key)

        access_token = env.get(ACCESS_TOKEN_VAR)
        if access_token:
            expires = env.get(EXPIRES_VAR)
            try:
                expires_at = int(expires) if expires else None
            except ValueError:
                logger.warning("Ignoring non-numeric %s=%r", EXPIRES_VAR, expires)
                expires_at = None
            return cls(
                access_token=access_token,
                refresh_token=env.get(REFRESH_TOKEN_VAR) or None,
                expires_at=expires_at,
            )

        return None


class OAuthTokenRefresher:
    """Exchanges a refresh token at the Claude OAuth token endpoint."""

    def __init__(
        self,
        token_url: str = TOKEN_URL,
        client_id: str = CLIENT_ID,
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.timeout = timeout
        self.transport = transport

    async def refresh(self, refresh_token: str) -> TokenGrant:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.token_url,
                    json={
                        "grant_type": "refresh_token",
                        "refresh_token": refresh_token,
                        "client_id": self.client_id,
                    },
                )
        except httpx.HTTPError as e:
            raise RefreshError(f"Refresh request failed: {e}", cause="network") from e

        if response.status_code in (400, 401):
            raise RefreshError(
                f"Refresh token rejected: {response.status_code} {response.text}",
                cause="invalid_grant",
            )
        if response.status_code != 200:
            raise RefreshError(f"Refresh failed: {response.status_code} {response.text}")

        try:
            data = response.json()
            return TokenGrant(
                access_token=str(data["access_token"]),
                refresh_token=str(data.get("refresh_token") or refresh_token),
                expires_in=int(data.get("expires_in", 3600)),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise RefreshError(f"Malformed refresh response: {e}") from e


class EnvFileStore:
    """Writes refreshed tokens back into the project's .env file.

    Each value replaces the line for its variable (or is appended), so other
    readers of the file always see whole assignments.
    """

    def __init__(self, path: Path):
        self.path = path

    def update_values(self, values: dict[str, str]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
            for key, value in values.items():
                set_key(self.path, key, value, quote_mode="never")
        except OSError as e:
            logger.warning("Failed to persist credentials to %s: %s", self.path, e)
            return False
        return True


class CredentialState:
    """The live credentials of one chat session."""

    def __init__(
        self,
        credentials: Credentials,
        refresher: TokenRefresher | None = None,
        store: CredentialStore | None = None,
        clock=time.time,
    ):
        self.credentials = credentials
        self.refresher = refresher or OAuthTokenRefresher()
        self.store = store
        self._clock = clock

    def needs_refresh(self) -> bool:
        creds = self.credentials
        if not creds.is_oauth or creds.expires_at is None:
            return False
        return self._clock() >= creds.expires_at - REFRESH_LOOKAHEAD_SECONDS

    async def refresh(self) -> None:
        """Swap in new OAuth tokens.

        Raises RefreshError without touching the current tokens on failure.
        Persisting the new tokens is best-effort.
        """
        creds = self.credentials
        if not creds.is_oauth:
            return
        if not creds.refresh_token:
            raise RefreshError("No refresh token configured", cause="invalid_grant")

        grant = await self.refresher.refresh(creds.refresh_token)
        expires_at = int(self._clock()) + grant.expires_in

        creds.access_token = grant.access_token
        creds.refresh_token = grant.refresh_token
        creds.expires_at = expires_at
        logger.info("Refreshed Claude OAuth token, expires at %d", expires_at)

        if self.store is not None:
            values = {
                ACCESS_TOKEN_VAR: grant.access_token,
                REFRESH_TOKEN_VAR: grant.refresh_token,
                EXPIRES_VAR: str(expires_at),
            }
            try:
                persisted = self.store.update_values(values)
            except Exception as e:
                logger.warning("Credential store raised while persisting tokens: %s", e)
                persisted = False
            if not persisted:
                logger.warning("Refreshed tokens are only held in memory")

    async def ensure_fresh(self) -> None:
        if self.needs_refresh():
            await self.refresh()

    def subprocess_env(self) -> dict[str, str]:
        """The one credential variable the claude CLI should see."""
        creds = self.credentials
        if creds.api_key:
            return {API_KEY_VAR: creds.api_key}
        if creds.access_token:
            return {OAUTH_TOKEN_ENV: creds.access_token}
        return {}
