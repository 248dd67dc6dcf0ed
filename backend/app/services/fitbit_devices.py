"""
Fitbit Device Sync
==================
Pulls the participant's paired trackers and scales from
GET /1/user/-/devices.json and replaces their user_devices rows.

Device sync runs beside the health data sync, not inside it: a malformed
device payload aborts only the device sync for that participant.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from app.config import Settings, get_settings
from app.db.store import FitbitStore
from app.models.fitbit import FitbitCredential, SyncParticipant
from app.models.metrics import BatteryStatus, DeviceRecord, DeviceSyncSummary
from app.services.errors import AuthError, InvalidDeviceData, UpstreamFetchError
from app.services.fitbit_auth import AuthenticatedFetcher, build_fetcher
from app.services.normalise import battery_status

logger = logging.getLogger(__name__)

DEVICES_PATH = "/1/user/-/devices.json"

_QUALITATIVE_BATTERY: dict[str, BatteryStatus] = {
    "high": "High",
    "full": "High",
    "medium": "Medium",
    "low": "Low",
}


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_battery_level(raw: Any, device_id: str = "") -> Optional[int]:
    """Accept an int or numeric string in [0, 100]; anything else is None."""
    if raw is None:
        return None

    level: Optional[int] = None
    if isinstance(raw, bool):
        level = None
    elif isinstance(raw, int):
        level = raw
    elif isinstance(raw, float) and raw.is_integer():
        level = int(raw)
    elif isinstance(raw, str):
        try:
            level = int(raw.strip())
        except ValueError:
            level = None

    if level is None or not 0 <= level <= 100:
        logger.warning("Invalid battery level for device %s: %r", device_id, raw)
        return None
    return level


def resolve_battery_status(qualitative: Optional[str], level: Optional[int]) -> BatteryStatus:
    """Fitbit's own battery field wins; numeric bucketing only when it is absent."""
    if qualitative:
        return _QUALITATIVE_BATTERY.get(qualitative.lower(), "Empty")
    return battery_status(level)


def _parse_sync_time(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("Unparseable lastSyncTime %r", raw)
        return None


def to_device_record(user_id: str, device: dict) -> Optional[DeviceRecord]:
    """Map one Fitbit device entry; None when it has no id."""
    device_id = device.get("id")
    if not device_id:
        logger.warning("Skipping device without id for user %s", user_id)
        return None

    device_id = str(device_id)
    level = parse_battery_level(device.get("batteryLevel"), device_id)
    features = device.get("features")
    return DeviceRecord(
        user_id=user_id,
        device_id=device_id,
        device_version=device.get("deviceVersion") or None,
        type="SCALE" if str(device.get("type") or "").upper() == "SCALE" else "TRACKER",
        battery=resolve_battery_status(device.get("battery"), level),
        battery_level=level,
        last_sync_time=_parse_sync_time(device.get("lastSyncTime")),
        mac=device.get("mac") or None,
        features=features if isinstance(features, list) else [],
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DeviceSyncService:
    """Replaces a participant's user_devices rows with Fitbit's current list."""

    def __init__(
        self,
        store: Optional[FitbitStore] = None,
        fetcher: Optional[AuthenticatedFetcher] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or FitbitStore()
        self._fetcher = fetcher or build_fetcher(self._store, self._settings, http_client)

    def _is_participant(self, participant_id: str) -> bool:
        profile = self._store.get_profile(participant_id)
        if profile is None:
            raise AuthError(f"No profile found for user {participant_id}")
        return profile.get("role") == "participant"

    async def sync_devices(
        self, participant_id: str, credential: FitbitCredential
    ) -> list[DeviceRecord]:
        """
        Fetch the device list and replace stored rows (delete-all, then insert).
        Researchers have no devices: returns [] without calling Fitbit.
        """
        if not self._is_participant(participant_id):
            logger.info("Skipping device sync for non-participant user %s", participant_id)
            return []

        response = await self._fetcher.fetch(
            participant_id,
            credential,
            f"{self._settings.fitbit_api_base_url}{DEVICES_PATH}",
        )
        if not response.is_success:
            raise UpstreamFetchError(response.status_code, response.text)

        payload = response.json()
        if not isinstance(payload, list):
            raise InvalidDeviceData(f"Expected a device list from Fitbit, got {type(payload).__name__}")

        records = [r for r in (to_device_record(participant_id, d) for d in payload) if r]
        self._store.replace_devices(participant_id, records)
        logger.info("Stored %d devices for user %s", len(records), participant_id)
        return records

    def list_devices(self, participant_id: str) -> list[DeviceRecord]:
        if not self._is_participant(participant_id):
            return []
        return [DeviceRecord(**row) for row in self._store.list_devices(participant_id)]

    async def sync_devices_for_all(
        self, participants: list[SyncParticipant]
    ) -> list[DeviceSyncSummary]:
        """Fan out device syncs concurrently; one failure does not cancel the rest."""
        connected = [p for p in participants if p.credential is not None]
        settled = await asyncio.gather(
            *(self.sync_devices(p.user_id, p.credential) for p in connected),
            return_exceptions=True,
        )

        summaries: list[DeviceSyncSummary] = []
        for participant, outcome in zip(connected, settled):
            if isinstance(outcome, Exception):
                logger.error("Device sync failed for user %s: %s", participant.user_id, outcome)
                summaries.append(DeviceSyncSummary(user_id=participant.user_id, error=str(outcome)))
            else:
                summaries.append(DeviceSyncSummary(user_id=participant.user_id, devices=outcome))
        return summaries
