"""
Fitbit Store
============
Supabase table access for the sync engine.

Tables:
  user_profiles  — role, Fitbit credential columns, last_sync_at
  fitbit_data    — one row per (user_id, date), upserted on re-sync
  user_devices   — replaced wholesale on each device sync
  sync_queue     — webhook notifications waiting for a sync

The uniqueness constraints on these tables are the only concurrency
safeguard; nothing here takes locks. Every PostgREST failure surfaces as
PersistenceError so callers deal with one exception type.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from postgrest.exceptions import APIError
from supabase import Client

from app.db.supabase import get_supabase_client
from app.models.fitbit import FitbitCredential, SyncParticipant
from app.models.metrics import DailyMetricRecord, DeviceRecord
from app.services.errors import PersistenceError

logger = logging.getLogger(__name__)

_PROFILES = "user_profiles"
_METRICS = "fitbit_data"
_DEVICES = "user_devices"
_QUEUE = "sync_queue"


def _execute(query: Any, action: str) -> Any:
    try:
        return query.execute()
    except APIError as exc:
        logger.error("Supabase %s failed: %s", action, exc.message)
        raise PersistenceError(f"{action} failed: {exc.message}") from exc


class FitbitStore:
    """Record-level access to the four tables the sync engine touches."""

    def __init__(self, client: Optional[Client] = None) -> None:
        self._db = client or get_supabase_client()

    # ---- Profiles & credentials ------------------------------------------

    def get_profile(self, user_id: str) -> Optional[dict]:
        result = _execute(
            self._db.table(_PROFILES).select("*").eq("user_id", user_id).maybe_single(),
            "profile lookup",
        )
        # postgrest returns None rather than an empty response when no row matches
        if result is None or not result.data:
            return None
        return result.data

    def get_role(self, user_id: str) -> Optional[str]:
        profile = self.get_profile(user_id)
        return profile.get("role") if profile else None

    def get_credential(self, user_id: str) -> Optional[FitbitCredential]:
        profile = self.get_profile(user_id)
        return FitbitCredential.from_profile(profile) if profile else None

    def save_credential(self, user_id: str, credential: FitbitCredential) -> None:
        """Replace all three credential columns in one update."""
        _execute(
            self._db.table(_PROFILES)
            .update(
                {
                    "fitbit_access_token": credential.access_token,
                    "fitbit_refresh_token": credential.refresh_token,
                    "token_expires_at": (
                        credential.expires_at.isoformat() if credential.expires_at else None
                    ),
                }
            )
            .eq("user_id", user_id),
            "credential update",
        )

    def clear_credential(self, user_id: str) -> None:
        _execute(
            self._db.table(_PROFILES)
            .update(
                {
                    "fitbit_access_token": None,
                    "fitbit_refresh_token": None,
                    "token_expires_at": None,
                }
            )
            .eq("user_id", user_id),
            "credential clear",
        )

    def list_connected_participants(
        self, user_ids: Optional[list[str]] = None
    ) -> list[SyncParticipant]:
        """Participants with a stored Fitbit credential, optionally filtered."""
        query = (
            self._db.table(_PROFILES)
            .select("user_id, fitbit_access_token, fitbit_refresh_token, token_expires_at")
            .eq("role", "participant")
            .not_.is_("fitbit_access_token", "null")
        )
        if user_ids:
            query = query.in_("user_id", user_ids)
        result = _execute(query, "participant listing")

        return [
            SyncParticipant(user_id=row["user_id"], credential=FitbitCredential.from_profile(row))
            for row in (result.data or [])
        ]

    def touch_last_sync(self, user_id: str, at: Optional[datetime] = None) -> None:
        at = at or datetime.now(timezone.utc)
        _execute(
            self._db.table(_PROFILES)
            .update({"last_sync_at": at.isoformat()})
            .eq("user_id", user_id),
            "last_sync_at update",
        )

    # ---- Daily metrics ---------------------------------------------------

    def upsert_daily_metrics(self, record: DailyMetricRecord) -> dict:
        """INSERT ... ON CONFLICT (user_id, date) DO UPDATE."""
        result = _execute(
            self._db.table(_METRICS).upsert(record.to_row(), on_conflict="user_id,date"),
            "daily metrics upsert",
        )
        if not result.data:
            raise PersistenceError(
                f"daily metrics upsert returned no row for {record.user_id} on {record.date}"
            )
        return result.data[0]

    # ---- Devices ---------------------------------------------------------

    def replace_devices(self, user_id: str, devices: list[DeviceRecord]) -> list[dict]:
        """Delete every device row for the user, then insert the new set."""
        _execute(self._db.table(_DEVICES).delete().eq("user_id", user_id), "device delete")
        if not devices:
            return []
        result = _execute(
            self._db.table(_DEVICES).insert([d.to_row() for d in devices]),
            "device insert",
        )
        return result.data or []

    def list_devices(self, user_id: str) -> list[dict]:
        result = _execute(
            self._db.table(_DEVICES).select("*").eq("user_id", user_id),
            "device listing",
        )
        return result.data or []

    # ---- Sync queue ------------------------------------------------------

    def enqueue_sync(self, user_id: str, day: date | str, collection_type: str) -> None:
        _execute(
            self._db.table(_QUEUE).insert(
                {
                    "user_id": user_id,
                    "date": day.isoformat() if isinstance(day, date) else day,
                    "collection_type": collection_type,
                    "status": "pending",
                }
            ),
            "sync queue insert",
        )
