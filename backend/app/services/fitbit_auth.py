"""
Fitbit Token Lifecycle
======================
OAuth2 token management and authenticated requests for the Fitbit Web API.

Responsibilities:
- TokenRefresher.refresh(): trade a stored refresh token for a new pair, persist it
- TokenRefresher.exchange_code(): trade an OAuth authorization code for the first pair
- AuthenticatedFetcher.fetch(): Bearer-authenticated request that refreshes
  pre-emptively near expiry and reactively on a 401, retrying exactly once

Fitbit rotates refresh tokens: each refresh invalidates the previous one.
The credential object passed into fetch() is therefore updated in place
after every refresh so later calls in the same cycle use the new pair.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from app.config import FitbitOAuthConfig, Settings, get_settings
from app.db.store import FitbitStore
from app.models.fitbit import FitbitCredential, FitbitTokenResponse
from app.services.errors import TokenRefreshError

logger = logging.getLogger(__name__)

_DEFAULT_EXPIRY_BUFFER_SECONDS = 60


async def _send(
    http_client: Optional[httpx.AsyncClient], method: str, url: str, **kwargs: Any
) -> httpx.Response:
    """Use the injected client if there is one, else a short-lived client."""
    if http_client is not None:
        return await http_client.request(method, url, **kwargs)
    async with httpx.AsyncClient(timeout=get_settings().fitbit_http_timeout_seconds) as client:
        return await client.request(method, url, **kwargs)


# ---------------------------------------------------------------------------
# TokenRefresher
# ---------------------------------------------------------------------------


class TokenRefresher:
    """Exchanges grants at the Fitbit token endpoint and stores the result."""

    def __init__(
        self,
        config: FitbitOAuthConfig,
        store: FitbitStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._http_client = http_client

    async def refresh(self, participant_id: str, refresh_token: str) -> FitbitCredential:
        """
        Use a refresh token to obtain a new access/refresh pair.
        Persists the new credential to user_profiles before returning it;
        callers must not save it again.
        Raises TokenRefreshError on a non-2xx response.
        """
        logger.info("Refreshing Fitbit token for user %s", participant_id)
        return await self._grant(
            participant_id,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
        )

    async def exchange_code(self, participant_id: str, code: str) -> FitbitCredential:
        """Trade the authorization code from the consent redirect for a token pair."""
        logger.info("Exchanging Fitbit authorization code for user %s", participant_id)
        return await self._grant(
            participant_id,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._config.redirect_uri,
            },
        )

    async def _grant(self, participant_id: str, form: dict) -> FitbitCredential:
        response = await _send(
            self._http_client,
            "POST",
            self._config.token_url,
            data=form,
            auth=(self._config.client_id, self._config.client_secret),
        )
        if not response.is_success:
            logger.warning(
                "Fitbit %s grant failed for user %s: %s",
                form["grant_type"],
                participant_id,
                response.status_code,
            )
            raise TokenRefreshError(response.status_code, response.text)

        credential = FitbitCredential.from_token_response(
            FitbitTokenResponse(**response.json())
        )
        self._store.save_credential(participant_id, credential)
        return credential


# ---------------------------------------------------------------------------
# AuthenticatedFetcher
# ---------------------------------------------------------------------------


class AuthenticatedFetcher:
    """Bearer-authenticated requests with transparent token refresh.

    HTTP failures other than auth come back as the response status; only a
    failed refresh raises.
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        http_client: Optional[httpx.AsyncClient] = None,
        expiry_buffer_seconds: int = _DEFAULT_EXPIRY_BUFFER_SECONDS,
    ) -> None:
        self._refresher = refresher
        self._http_client = http_client
        self._expiry_buffer_seconds = expiry_buffer_seconds

    async def fetch(
        self,
        participant_id: str,
        credential: FitbitCredential,
        url: str,
        method: str = "GET",
        **request_kwargs: Any,
    ) -> httpx.Response:
        if credential.expires_within(self._expiry_buffer_seconds):
            await self._refresh(participant_id, credential)

        response = await self._request(credential, method, url, request_kwargs)

        if response.status_code == httpx.codes.UNAUTHORIZED:
            logger.info("Fitbit returned 401 for user %s, refreshing and retrying", participant_id)
            await self._refresh(participant_id, credential)
            # One retry only; whatever comes back is the answer
            response = await self._request(credential, method, url, request_kwargs)

        return response

    async def _refresh(self, participant_id: str, credential: FitbitCredential) -> None:
        refreshed = await self._refresher.refresh(participant_id, credential.refresh_token)
        credential.replace_with(refreshed)

    async def _request(
        self,
        credential: FitbitCredential,
        method: str,
        url: str,
        request_kwargs: dict,
    ) -> httpx.Response:
        headers = dict(request_kwargs.get("headers") or {})
        headers["Authorization"] = f"Bearer {credential.access_token}"
        kwargs = {**request_kwargs, "headers": headers}
        return await _send(self._http_client, method, url, **kwargs)


def build_fetcher(
    store: FitbitStore,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AuthenticatedFetcher:
    """Wire a refresher and fetcher from settings; shared by every sync service."""
    settings = settings or get_settings()
    refresher = TokenRefresher(settings.oauth_config(), store, http_client)
    return AuthenticatedFetcher(
        refresher,
        http_client=http_client,
        expiry_buffer_seconds=settings.token_expiry_buffer_seconds,
    )
