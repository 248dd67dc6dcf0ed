"""
Tests for the Fitbit token lifecycle
====================================
Covers:
- TokenRefresher: refresh grant body, Basic auth, expiry computation,
  persistence side effect, non-2xx → TokenRefreshError, code exchange
- AuthenticatedFetcher: Bearer header, pre-emptive refresh inside the 60s
  window (exactly one refresh), 401 → one refresh + one retry, retry failure
  returned as-is, non-auth errors untouched, credential updated in place

Run: pytest tests/test_fitbit_auth.py -v
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import pytest
import respx
from httpx import Response

from app.models.fitbit import FitbitCredential
from app.services.errors import TokenRefreshError
from app.services.fitbit_auth import AuthenticatedFetcher, TokenRefresher, build_fetcher
from conftest import TOKEN_URL, token_response, valid_credential

_DEVICES_URL = "https://api.fitbit.com/1/user/-/devices.json"


def _refresher(store, settings) -> TokenRefresher:
    return TokenRefresher(settings.oauth_config(), store)


# ---------------------------------------------------------------------------
# TestTokenRefresher
# ---------------------------------------------------------------------------

class TestTokenRefresher:

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_posts_refresh_grant_with_basic_auth(self, store, settings, user_id):
        route = respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))

        await _refresher(store, settings).refresh(user_id, "old-refresh-token")

        request = route.calls[0].request
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh-token"]
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_computes_expiry_from_expires_in(self, store, settings, user_id):
        respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))

        before = datetime.now(timezone.utc)
        credential = await _refresher(store, settings).refresh(user_id, "old-refresh-token")

        assert credential.access_token == "new-access-token"
        assert credential.refresh_token == "new-refresh-token"
        assert before + timedelta(seconds=28800) <= credential.expires_at
        assert credential.expires_at <= datetime.now(timezone.utc) + timedelta(seconds=28800)

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_persists_new_credential(self, store, settings, user_id):
        respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))

        await _refresher(store, settings).refresh(user_id, "old-refresh-token")

        assert len(store.saved_credentials) == 1
        saved_user, saved = store.saved_credentials[0]
        assert saved_user == user_id
        assert saved.access_token == "new-access-token"
        assert saved.refresh_token == "new-refresh-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_2xx_raises_and_persists_nothing(self, store, settings, user_id):
        respx.post(TOKEN_URL).mock(
            return_value=Response(400, json={"errors": [{"errorType": "invalid_grant"}]})
        )

        with pytest.raises(TokenRefreshError) as exc_info:
            await _refresher(store, settings).refresh(user_id, "revoked")

        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.body
        assert store.saved_credentials == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code_sends_redirect_uri(self, store, settings, user_id):
        route = respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))

        credential = await _refresher(store, settings).exchange_code(user_id, "auth-code")

        form = parse_qs(route.calls[0].request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code"]
        assert form["redirect_uri"] == ["https://portal.example.org/fitbit/callback"]
        assert credential.access_token == "new-access-token"
        assert store.saved_credentials[0][0] == user_id


# ---------------------------------------------------------------------------
# TestAuthenticatedFetcher
# ---------------------------------------------------------------------------

class TestAuthenticatedFetcher:

    def _fetcher(self, store, settings) -> AuthenticatedFetcher:
        return build_fetcher(store, settings)

    @pytest.mark.asyncio
    @respx.mock(assert_all_called=False)
    async def test_valid_token_sent_as_bearer_without_refresh(self, store, settings, user_id, respx_mock):
        token_route = respx_mock.post(TOKEN_URL)
        data_route = respx_mock.get(_DEVICES_URL).mock(return_value=Response(200, json=[]))

        response = await self._fetcher(store, settings).fetch(user_id, valid_credential(), _DEVICES_URL)

        assert response.status_code == 200
        assert not token_route.called
        assert data_route.calls[0].request.headers["Authorization"] == "Bearer access-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_token_inside_expiry_window_refreshed_once_before_request(
        self, store, settings, user_id
    ):
        token_route = respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))
        data_route = respx.get(_DEVICES_URL).mock(return_value=Response(200, json=[]))
        credential = FitbitCredential(
            access_token="stale",
            refresh_token="refresh-token",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=30),
        )

        await self._fetcher(store, settings).fetch(user_id, credential, _DEVICES_URL)

        assert token_route.call_count == 1
        assert data_route.call_count == 1
        assert data_route.calls[0].request.headers["Authorization"] == "Bearer new-access-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_expiry_treated_as_expired(self, store, settings, user_id):
        token_route = respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))
        respx.get(_DEVICES_URL).mock(return_value=Response(200, json=[]))
        credential = FitbitCredential(access_token="a", refresh_token="r", expires_at=None)

        await self._fetcher(store, settings).fetch(user_id, credential, _DEVICES_URL)

        assert token_route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_401_refreshes_once_and_retries_once(self, store, settings, user_id):
        token_route = respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))
        data_route = respx.get(_DEVICES_URL).mock(
            side_effect=[Response(401, text="expired_token"), Response(200, json=[])]
        )

        response = await self._fetcher(store, settings).fetch(user_id, valid_credential(), _DEVICES_URL)

        assert response.status_code == 200
        assert token_route.call_count == 1
        assert data_route.call_count == 2
        assert data_route.calls[1].request.headers["Authorization"] == "Bearer new-access-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_second_401_returned_without_further_retry(self, store, settings, user_id):
        token_route = respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))
        data_route = respx.get(_DEVICES_URL).mock(return_value=Response(401, text="nope"))

        response = await self._fetcher(store, settings).fetch(user_id, valid_credential(), _DEVICES_URL)

        assert response.status_code == 401
        assert token_route.call_count == 1
        assert data_route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock(assert_all_called=False)
    async def test_other_errors_returned_as_is(self, store, settings, user_id, respx_mock):
        token_route = respx_mock.post(TOKEN_URL)
        respx_mock.get(_DEVICES_URL).mock(return_value=Response(429, text="Too Many Requests"))

        response = await self._fetcher(store, settings).fetch(user_id, valid_credential(), _DEVICES_URL)

        assert response.status_code == 429
        assert not token_route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_refresh_after_401_raises(self, store, settings, user_id):
        respx.post(TOKEN_URL).mock(return_value=Response(401, text="invalid_grant"))
        respx.get(_DEVICES_URL).mock(return_value=Response(401))

        with pytest.raises(TokenRefreshError):
            await self._fetcher(store, settings).fetch(user_id, valid_credential(), _DEVICES_URL)

    @pytest.mark.asyncio
    @respx.mock
    async def test_credential_updated_in_place_after_refresh(self, store, settings, user_id):
        respx.post(TOKEN_URL).mock(return_value=Response(200, json=token_response()))
        respx.get(_DEVICES_URL).mock(side_effect=[Response(401), Response(200, json=[])])
        credential = valid_credential()

        await self._fetcher(store, settings).fetch(user_id, credential, _DEVICES_URL)

        assert credential.access_token == "new-access-token"
        assert credential.refresh_token == "new-refresh-token"

    @pytest.mark.asyncio
    @respx.mock
    async def test_extra_headers_preserved(self, store, settings, user_id):
        route = respx.get(_DEVICES_URL).mock(return_value=Response(200, json=[]))

        await self._fetcher(store, settings).fetch(
            user_id, valid_credential(), _DEVICES_URL, headers={"Accept-Language": "en_GB"}
        )

        request = route.calls[0].request
        assert request.headers["Accept-Language"] == "en_GB"
        assert request.headers["Authorization"] == "Bearer access-token"
