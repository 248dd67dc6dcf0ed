"""
Fitbit Router
=============
POST   /api/v1/fitbit/connect          — Exchange the OAuth code, store tokens, run the first sync
DELETE /api/v1/fitbit/connect          — Disconnect: null all three credential columns
POST   /api/v1/fitbit/sync             — Researcher-triggered sync of participants + devices
POST   /api/v1/fitbit/sync/immediate   — Background job ingress (shared secret)
GET    /api/v1/fitbit/devices          — Caller's stored devices
POST   /api/v1/fitbit/devices/sync     — Refresh the caller's devices from Fitbit

Every route builds its services around one httpx.AsyncClient and one
FitbitStore, so the connect flow and the background job run the same
sync engine with the same transport.
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from pydantic import ValidationError

from app.config import get_settings
from app.db.store import FitbitStore
from app.db.supabase import get_supabase_client
from app.models.fitbit import (
    ConnectRequest,
    FitbitCredential,
    ImmediateSyncRequest,
    ResearcherSyncRequest,
    SyncParticipant,
)
from app.models.metrics import BatchSyncResult, DeviceRecord, ResearcherSyncResponse
from app.services.errors import (
    AuthError,
    FitbitError,
    InvalidDeviceData,
    PersistenceError,
    TokenRefreshError,
    UpstreamFetchError,
)
from app.services.fitbit_auth import AuthenticatedFetcher, TokenRefresher, build_fetcher
from app.services.fitbit_devices import DeviceSyncService
from app.services.fitbit_subscriptions import FitbitSubscriptionService
from app.services.fitbit_sync import FitbitSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/fitbit", tags=["fitbit"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_authenticated_profile(authorization: str) -> dict:
    """Verify the JWT and return the caller's user_profiles row.

    Raises HTTPException 401 if the token is invalid or missing.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Missing or invalid authorization header", "code": "auth_required"},
        )

    token = authorization.removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Empty bearer token", "code": "auth_required"},
        )

    db = get_supabase_client()

    try:
        auth_response = db.auth.get_user(token)
    except Exception as exc:
        logger.warning("Auth token verification failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid or expired token", "code": "auth_invalid"},
        ) from exc

    if not auth_response or not auth_response.user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "User not found for token", "code": "auth_invalid"},
        )

    profile = FitbitStore(db).get_profile(auth_response.user.id)
    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "User profile not found", "code": "user_not_found"},
        )

    return profile


def _error_to_http(exc: FitbitError) -> HTTPException:
    """Map the sync error taxonomy onto API responses."""
    if isinstance(exc, AuthError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "code": "fitbit_not_connected"},
        )
    if isinstance(exc, TokenRefreshError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": "Fitbit rejected the token exchange", "code": "fitbit_token_error"},
        )
    if isinstance(exc, (UpstreamFetchError, InvalidDeviceData)):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(exc), "code": "fitbit_upstream_error"},
        )
    if isinstance(exc, PersistenceError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Failed to save Fitbit data", "code": "db_error"},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"message": str(exc), "code": "fitbit_error"},
    )


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=get_settings().fitbit_http_timeout_seconds)


def _require_credential(store: FitbitStore, user_id: str) -> FitbitCredential:
    credential = store.get_credential(user_id)
    if credential is None:
        raise AuthError(f"No Fitbit credential for user {user_id}")
    return credential


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

@router.post(
    "/connect",
    response_model=BatchSyncResult,
    summary="Connect a Fitbit account",
    description=(
        "Exchange the authorization code from the Fitbit consent redirect, "
        "store the token pair on the caller's profile, register webhook "
        "subscriptions and run the first sync over the trailing window."
    ),
)
async def connect_fitbit(
    body: ConnectRequest,
    authorization: str = Header(..., description="Bearer token from Supabase Auth"),
) -> BatchSyncResult:
    profile = _get_authenticated_profile(authorization)
    user_id: str = profile["user_id"]
    settings = get_settings()
    store = FitbitStore(get_supabase_client())

    async with _http_client() as http:
        refresher = TokenRefresher(settings.oauth_config(), store, http)
        fetcher = AuthenticatedFetcher(refresher, http, settings.token_expiry_buffer_seconds)
        try:
            credential = await refresher.exchange_code(user_id, body.code)
        except FitbitError as exc:
            raise _error_to_http(exc) from exc

        try:
            await FitbitSubscriptionService(store, fetcher, settings=settings).ensure_subscriptions(
                user_id, credential
            )
        except (FitbitError, httpx.HTTPError) as exc:
            # Polling still works without push notifications
            logger.warning("Could not register Fitbit subscriptions for user %s: %s", user_id, exc)

        sync = FitbitSyncService(store, fetcher, settings=settings)
        return await sync.sync_all([SyncParticipant(user_id=user_id, credential=credential)])


@router.delete(
    "/connect",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Disconnect the caller's Fitbit account",
)
async def disconnect_fitbit(
    authorization: str = Header(..., description="Bearer token from Supabase Auth"),
) -> Response:
    profile = _get_authenticated_profile(authorization)
    try:
        FitbitStore(get_supabase_client()).clear_credential(profile["user_id"])
    except PersistenceError as exc:
        raise _error_to_http(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

@router.post(
    "/sync",
    response_model=ResearcherSyncResponse,
    summary="Sync participants' Fitbit data",
    description=(
        "Researchers only. Syncs heart rate and sleep for every connected "
        "participant (or the listed user_ids) over the trailing window, "
        "then refreshes their devices concurrently."
    ),
    responses={403: {"description": "Caller is not a researcher"}},
)
async def sync_participants(
    body: ResearcherSyncRequest,
    authorization: str = Header(..., description="Bearer token from Supabase Auth"),
) -> ResearcherSyncResponse:
    profile = _get_authenticated_profile(authorization)
    if profile.get("role") != "researcher":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Only researchers can trigger a sync", "code": "forbidden"},
        )

    settings = get_settings()
    store = FitbitStore(get_supabase_client())
    try:
        participants = store.list_connected_participants(body.user_ids)
    except PersistenceError as exc:
        raise _error_to_http(exc) from exc

    async with _http_client() as http:
        fetcher = build_fetcher(store, settings, http)
        batch = await FitbitSyncService(store, fetcher, settings=settings).sync_all(participants)
        devices = await DeviceSyncService(store, fetcher, settings=settings).sync_devices_for_all(
            participants
        )

    return ResearcherSyncResponse(sync=batch, devices=devices)


@router.post(
    "/sync/immediate",
    summary="Background job sync",
    description=(
        "Called by the periodic sync job with the participants' stored tokens. "
        "Requires the X-Sync-Secret header."
    ),
)
async def immediate_sync(
    request: Request,
    x_sync_secret: Optional[str] = Header(default=None, alias="X-Sync-Secret"),
) -> dict:
    settings = get_settings()
    if not settings.sync_job_secret or not hmac.compare_digest(
        x_sync_secret or "", settings.sync_job_secret
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid sync secret", "code": "auth_invalid"},
        )

    # Parsed by hand so every malformed body is a 400, not FastAPI's 422
    try:
        body = ImmediateSyncRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("Rejected immediate sync body: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid request", "code": "invalid_request"},
        ) from exc

    if not body.immediate or not body.participants:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid request", "code": "invalid_request"},
        )

    store = FitbitStore(get_supabase_client())
    async with _http_client() as http:
        sync = FitbitSyncService(store, http_client=http, settings=settings)
        result = await sync.sync_all([p.to_sync_participant() for p in body.participants])

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": result.error or "Sync failed", "code": "sync_failed"},
        )

    return {
        "success": True,
        "message": "Immediate sync completed",
        "results": [r.model_dump(mode="json") for r in result.results],
    }


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------

@router.get(
    "/devices",
    response_model=list[DeviceRecord],
    summary="List the caller's Fitbit devices",
)
async def list_devices(
    authorization: str = Header(..., description="Bearer token from Supabase Auth"),
) -> list[DeviceRecord]:
    profile = _get_authenticated_profile(authorization)
    store = FitbitStore(get_supabase_client())
    try:
        return DeviceSyncService(store).list_devices(profile["user_id"])
    except FitbitError as exc:
        raise _error_to_http(exc) from exc


@router.post(
    "/devices/sync",
    response_model=list[DeviceRecord],
    summary="Refresh the caller's Fitbit devices",
)
async def sync_devices(
    authorization: str = Header(..., description="Bearer token from Supabase Auth"),
) -> list[DeviceRecord]:
    profile = _get_authenticated_profile(authorization)
    user_id: str = profile["user_id"]
    store = FitbitStore(get_supabase_client())

    async with _http_client() as http:
        service = DeviceSyncService(store, http_client=http)
        try:
            return await service.sync_devices(user_id, _require_credential(store, user_id))
        except FitbitError as exc:
            raise _error_to_http(exc) from exc
