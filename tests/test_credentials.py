"""Tests for credential handling and token refresh."""

import json

import httpx
import pytest

from conftest import FakeRefresher, FakeStore
from devchat.credentials import (
    CredentialState,
    Credentials,
    EnvFileStore,
    OAuthTokenRefresher,
    RefreshError,
    TokenGrant,
)

NOW = 1_700_000_000


def _oauth(expires_in: int) -> Credentials:
    return Credentials(access_token="old-access", refresh_token="old-refresh", expires_at=NOW + expires_in)


class TestCredentialsFromEnv:
    def test_api_key(self):
        creds = Credentials.from_env({"ANTHROPIC_API_KEY": "sk-1"})
        assert creds.api_key == "sk-1"
        assert not creds.is_oauth

    def test_oauth_triad(self):
        creds = Credentials.from_env({
            "CLAUDE_ACCESS_TOKEN": "at",
            "CLAUDE_REFRESH_TOKEN": "rt",
            "CLAUDE_TOKEN_EXPIRES": str(NOW),
        })
        assert creds.is_oauth
        assert (creds.access_token, creds.refresh_token, creds.expires_at) == ("at", "rt", NOW)

    def test_api_key_wins_over_oauth(self):
        creds = Credentials.from_env({"ANTHROPIC_API_KEY": "sk-1", "CLAUDE_ACCESS_TOKEN": "at"})
        assert creds.api_key == "sk-1"
        assert creds.access_token is None

    def test_nothing_configured(self):
        assert Credentials.from_env({}) is None
        assert Credentials.from_env({"ANTHROPIC_API_KEY": ""}) is None

    def test_bad_expiry_is_ignored(self):
        creds = Credentials.from_env({"CLAUDE_ACCESS_TOKEN": "at", "CLAUDE_TOKEN_EXPIRES": "soon"})
        assert creds.expires_at is None


class TestNeedsRefresh:
    def test_inside_lookahead_window(self):
        state = CredentialState(_oauth(200), refresher=FakeRefresher(), clock=lambda: NOW)
        assert state.needs_refresh() is True

    def test_already_expired(self):
        state = CredentialState(_oauth(-10), refresher=FakeRefresher(), clock=lambda: NOW)
        assert state.needs_refresh() is True

    def test_outside_lookahead_window(self):
        state = CredentialState(_oauth(301), refresher=FakeRefresher(), clock=lambda: NOW)
        assert state.needs_refresh() is False

    def test_api_key_never_refreshes(self):
        state = CredentialState(Credentials(api_key="sk"), refresher=FakeRefresher(), clock=lambda: NOW)
        assert state.needs_refresh() is False


class TestRefresh:
    @pytest.mark.asyncio
    async def test_success_replaces_tokens_and_persists(self):
        refresher = FakeRefresher()
        store = FakeStore()
        state = CredentialState(_oauth(200), refresher=refresher, store=store, clock=lambda: NOW)

        await state.refresh()

        creds = state.credentials
        assert refresher.calls == [("refresh", "old-refresh")]
        assert (creds.access_token, creds.refresh_token, creds.expires_at) == ("new-access", "new-refresh", NOW + 3600)
        assert store.updates == [{
            "CLAUDE_ACCESS_TOKEN": "new-access",
            "CLAUDE_REFRESH_TOKEN": "new-refresh",
            "CLAUDE_TOKEN_EXPIRES": str(NOW + 3600),
        }]
        assert state.needs_refresh() is False

    @pytest.mark.asyncio
    async def test_failure_leaves_state_untouched(self):
        store = FakeStore()
        state = CredentialState(
            _oauth(200),
            refresher=FakeRefresher(error=RefreshError("nope", cause="invalid_grant")),
            store=store,
            clock=lambda: NOW,
        )

        with pytest.raises(RefreshError) as exc_info:
            await state.refresh()

        assert exc_info.value.cause == "invalid_grant"
        creds = state.credentials
        assert (creds.access_token, creds.refresh_token, creds.expires_at) == ("old-access", "old-refresh", NOW + 200)
        assert store.updates == []

    @pytest.mark.asyncio
    async def test_persistence_failure_is_not_a_refresh_failure(self):
        class BrokenStore:
            def update_values(self, values):
                raise OSError("read-only filesystem")

        state = CredentialState(_oauth(200), refresher=FakeRefresher(), store=BrokenStore(), clock=lambda: NOW)
        await state.refresh()
        assert state.credentials.access_token == "new-access"

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self):
        state = CredentialState(
            Credentials(access_token="at", expires_at=NOW), refresher=FakeRefresher(), clock=lambda: NOW
        )
        with pytest.raises(RefreshError):
            await state.refresh()

    @pytest.mark.asyncio
    async def test_ensure_fresh_only_when_needed(self):
        refresher = FakeRefresher()
        state = CredentialState(_oauth(3600), refresher=refresher, clock=lambda: NOW)
        await state.ensure_fresh()
        assert refresher.calls == []


class TestSubprocessEnv:
    def test_api_key_form(self):
        state = CredentialState(Credentials(api_key="sk"))
        assert state.subprocess_env() == {"ANTHROPIC_API_KEY": "sk"}

    def test_oauth_form(self):
        state = CredentialState(_oauth(3600))
        assert state.subprocess_env() == {"CLAUDE_CODE_OAUTH_TOKEN": "old-access"}


class TestOAuthTokenRefresher:
    @pytest.mark.asyncio
    async def test_posts_refresh_grant(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": "a2", "refresh_token": "r2", "expires_in": 600})

        refresher = OAuthTokenRefresher(token_url="https://auth.test/token", transport=httpx.MockTransport(handler))
        grant = await refresher.refresh("r1")

        assert grant == TokenGrant(access_token="a2", refresh_token="r2", expires_in=600)
        assert seen["url"] == "https://auth.test/token"
        assert seen["body"]["grant_type"] == "refresh_token"
        assert seen["body"]["refresh_token"] == "r1"

    @pytest.mark.asyncio
    async def test_keeps_old_refresh_token_when_not_rotated(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"access_token": "a2", "expires_in": 60}))
        grant = await OAuthTokenRefresher(transport=transport).refresh("r1")
        assert grant.refresh_token == "r1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,cause",
        [(400, "invalid_grant"), (401, "invalid_grant"), (500, "server"), (503, "server")],
    )
    async def test_http_errors(self, status, cause):
        transport = httpx.MockTransport(lambda r: httpx.Response(status, json={"error": "x"}))
        with pytest.raises(RefreshError) as exc_info:
            await OAuthTokenRefresher(transport=transport).refresh("r1")
        assert exc_info.value.cause == cause

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RefreshError) as exc_info:
            await OAuthTokenRefresher(transport=httpx.MockTransport(handler)).refresh("r1")
        assert exc_info.value.cause == "network"

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(RefreshError) as exc_info:
            await OAuthTokenRefresher(transport=transport).refresh("r1")
        assert exc_info.value.cause == "server"


class TestEnvFileStore:
    def test_replaces_by_name_and_keeps_other_lines(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("OTHER=1\nCLAUDE_ACCESS_TOKEN=old\n", encoding="utf-8")

        store = EnvFileStore(env_file)
        assert store.update_values({"CLAUDE_ACCESS_TOKEN": "new", "CLAUDE_TOKEN_EXPIRES": "123"}) is True

        lines = env_file.read_text(encoding="utf-8").splitlines()
        assert "OTHER=1" in lines
        assert "CLAUDE_ACCESS_TOKEN=new" in lines
        assert "CLAUDE_ACCESS_TOKEN=old" not in lines
        assert "CLAUDE_TOKEN_EXPIRES=123" in lines

    def test_creates_missing_file(self, tmp_path):
        env_file = tmp_path / "sub" / ".env"
        assert EnvFileStore(env_file).update_values({"A": "b"}) is True
        assert "A=b" in env_file.read_text(encoding="utf-8")

    def test_failure_returns_false(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.mkdir()
        assert EnvFileStore(env_file).update_values({"A": "b"}) is False
