"""
Shared fixtures for the Fitbit sync tests.

FakeStore stands in for FitbitStore with plain dicts so the sync engine can
be exercised end to end (idempotent upsert, last_sync_at, device replace)
without building MagicMock chains for every Supabase call.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest

from app.config import Settings
from app.models.fitbit import FitbitCredential, SyncParticipant
from app.models.metrics import DailyMetricRecord, DeviceRecord
from app.services.errors import PersistenceError

FITBIT_API = "https://api.fitbit.com"
TOKEN_URL = "https://api.fitbit.com/oauth2/token"


class FakeStore:
    def __init__(self) -> None:
        self.profiles: dict[str, dict] = {}
        self.metrics: dict[tuple[str, str], dict] = {}
        self.devices: dict[str, list[dict]] = {}
        self.queue: list[dict] = []
        self.saved_credentials: list[tuple[str, FitbitCredential]] = []
        self.last_sync_touched: list[str] = []
        self.fail_upsert = False
        self.fail_touch = False

    def add_profile(self, user_id: str, role: str = "participant", **fields) -> None:
        self.profiles[user_id] = {"user_id": user_id, "role": role, **fields}

    def get_profile(self, user_id: str) -> Optional[dict]:
        return self.profiles.get(user_id)

    def get_role(self, user_id: str) -> Optional[str]:
        profile = self.get_profile(user_id)
        return profile.get("role") if profile else None

    def get_credential(self, user_id: str) -> Optional[FitbitCredential]:
        profile = self.get_profile(user_id)
        return FitbitCredential.from_profile(profile) if profile else None

    def save_credential(self, user_id: str, credential: FitbitCredential) -> None:
        self.saved_credentials.append((user_id, credential.model_copy()))

    def clear_credential(self, user_id: str) -> None:
        self.profiles[user_id].update(
            fitbit_access_token=None, fitbit_refresh_token=None, token_expires_at=None
        )

    def list_connected_participants(self, user_ids=None) -> list[SyncParticipant]:
        return [
            SyncParticipant(user_id=uid, credential=FitbitCredential.from_profile(p))
            for uid, p in self.profiles.items()
            if p.get("fitbit_access_token") and (not user_ids or uid in user_ids)
        ]

    def touch_last_sync(self, user_id: str, at: Optional[datetime] = None) -> None:
        if self.fail_touch:
            raise PersistenceError("last_sync_at update failed")
        self.last_sync_touched.append(user_id)

    def upsert_daily_metrics(self, record: DailyMetricRecord) -> dict:
        if self.fail_upsert:
            raise PersistenceError("daily metrics upsert failed")
        row = record.to_row()
        self.metrics[(row["user_id"], row["date"])] = row
        return row

    def replace_devices(self, user_id: str, devices: list[DeviceRecord]) -> list[dict]:
        self.devices[user_id] = [d.to_row() for d in devices]
        return self.devices[user_id]

    def list_devices(self, user_id: str) -> list[dict]:
        return self.devices.get(user_id, [])

    def enqueue_sync(self, user_id, day, collection_type) -> None:
        self.queue.append({"user_id": user_id, "date": day, "collection_type": collection_type})


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        fitbit_client_id="client-id",
        fitbit_client_secret="client-secret",
        fitbit_redirect_uri="https://portal.example.org/fitbit/callback",
        sync_pacing_seconds=0,
        sync_job_secret="job-secret",
        fitbit_verification_code="verify-me",
    )


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())


def valid_credential() -> FitbitCredential:
    return FitbitCredential(
        access_token="access-token",
        refresh_token="refresh-token",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=8),
    )


def token_response(access_token: str = "new-access-token") -> dict:
    return {
        "access_token": access_token,
        "refresh_token": "new-refresh-token",
        "expires_in": 28800,
        "token_type": "Bearer",
        "scope": "heartrate sleep settings",
        "user_id": "ABC123",
    }


def heart_rate_payload(day: date, resting: int = 62) -> dict:
    return {
        "activities-heart": [
            {
                "dateTime": day.isoformat(),
                "value": {
                    "restingHeartRate": resting,
                    "heartRateZones": [
                        {"name": "Out of Range", "min": 30, "max": 100, "minutes": 1200},
                        {"name": "Fat Burn", "min": 100, "max": 140, "minutes": 60},
                        {"name": "Cardio", "min": 140, "max": 170, "minutes": 10},
                        {"name": "Peak", "min": 170, "max": 220, "minutes": 0},
                    ],
                },
            }
        ]
    }


def sleep_payload(duration: int = 27_000_000, efficiency: int = 93) -> dict:
    return {
        "sleep": [
            {
                "isMainSleep": True,
                "duration": duration,
                "efficiency": efficiency,
                "levels": {
                    "summary": {"deep": {"minutes": 80}, "rem": {"minutes": 95}},
                    "data": [{"dateTime": "2026-02-20T23:10:00.000", "level": "light", "seconds": 600}],
                },
            }
        ]
    }
