"""
Fitbit Health Data Sync
=======================
The one sync engine used by both the interactive connect flow and the
background job.

Responsibilities:
- sync_day(): fetch heart rate then sleep for one participant-day, normalise,
  upsert into fitbit_data on (user_id, date)
- sync_all(): walk participants × trailing date window sequentially with a
  pacing delay, aggregate outcomes, bump last_sync_at on partial success
- sync_connected_participants(): load credentials from user_profiles and run sync_all

Dates and participants are never synced in parallel. Fitbit allows 150
requests per user per hour; sequential calls keep a 7-day window (14
requests) well inside that and make failures easy to attribute.

Only heart rate and sleep are fetched. HRV, SpO2, breathing rate,
temperature and ECG columns are written as null until their endpoints
are confirmed for the study's device models.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from app.config import Settings, get_settings
from app.db.store import FitbitStore
from app.models.fitbit import FitbitCredential, SyncParticipant
from app.models.metrics import (
    BatchSyncResult,
    DailyMetricRecord,
    ParticipantSyncResult,
    SyncOutcome,
)
from app.services.errors import AuthError, FitbitError, UpstreamFetchError
from app.services.fitbit_auth import AuthenticatedFetcher, build_fetcher
from app.services.normalise import normalise_heart_rate, normalise_sleep

logger = logging.getLogger(__name__)

HEART_RATE_PATH = "/1/user/-/activities/heart/date/{date}/1d.json"
SLEEP_PATH = "/1.2/user/-/sleep/date/{date}.json"


def trailing_window(end_date: date, days: int) -> list[date]:
    """``days`` consecutive dates ending on ``end_date``, oldest first."""
    return [end_date - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


class FitbitSyncService:
    """Syncs heart rate and sleep from Fitbit into fitbit_data."""

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

    # ---- Single participant-day ------------------------------------------

    async def sync_day(
        self, participant_id: str, day: date, credential: FitbitCredential
    ) -> bool:
        """
        Sync one calendar day for one participant.
        Returns True only when the fitbit_data upsert succeeded. A day with
        neither heart rate nor sleep is not written and gives False. Never
        raises for Fitbit, token or store failures; they are logged and give False.
        """
        date_str = day.isoformat()
        try:
            heart_rate_data = await self._get_json(
                participant_id, credential, HEART_RATE_PATH.format(date=date_str)
            )
            sleep_data = await self._get_json(
                participant_id, credential, SLEEP_PATH.format(date=date_str)
            )

            record = DailyMetricRecord(
                user_id=participant_id,
                date=day,
                heart_rate=normalise_heart_rate(heart_rate_data),
                sleep=normalise_sleep(sleep_data),
            )
            if record.heart_rate is None and record.sleep is None:
                # Nothing recorded yet; an all-null row would mask earlier data
                logger.info("No Fitbit data for user %s on %s", participant_id, date_str)
                return False
            self._store.upsert_daily_metrics(record)
        except (FitbitError, httpx.HTTPError, ValueError) as exc:
            logger.error("Error syncing data for user %s on %s: %s", participant_id, date_str, exc)
            return False
        except Exception:
            # Malformed payload shapes; the day is recorded as failed, never raised
            logger.exception("Unexpected error syncing user %s on %s", participant_id, date_str)
            return False

        return True

    async def _get_json(
        self, participant_id: str, credential: FitbitCredential, path: str
    ) -> Any:
        response = await self._fetcher.fetch(
            participant_id, credential, f"{self._settings.fitbit_api_base_url}{path}"
        )
        if not response.is_success:
            raise UpstreamFetchError(response.status_code, response.text)
        return response.json()

    # ---- Batch -----------------------------------------------------------

    async def sync_all(
        self,
        participants: list[SyncParticipant],
        end_date: Optional[date] = None,
    ) -> BatchSyncResult:
        """
        Sync every participant over the trailing window, one date at a time.

        Individual date failures are recorded, never raised. ``success`` is
        False only when the orchestration itself broke, e.g. the
        last_sync_at write failed.
        """
        end_date = end_date or datetime.now(timezone.utc).date()
        dates = trailing_window(end_date, self._settings.sync_window_days)
        results: list[ParticipantSyncResult] = []

        try:
            for participant in participants:
                results.append(await self._sync_participant(participant, dates))
        except Exception as exc:
            logger.exception("Batch sync aborted after %d participants", len(results))
            return BatchSyncResult(success=False, results=results, error=str(exc))

        return BatchSyncResult(success=True, results=results)

    async def _sync_participant(
        self, participant: SyncParticipant, dates: list[date]
    ) -> ParticipantSyncResult:
        user_id = participant.user_id
        credential = participant.credential
        if credential is None:
            error = AuthError(f"No Fitbit credential for user {user_id}")
            logger.warning("Skipping sync: %s", error)
            return ParticipantSyncResult(user_id=user_id, error=str(error))

        outcomes: list[SyncOutcome] = []
        for index, day in enumerate(dates):
            if index:
                await asyncio.sleep(self._settings.sync_pacing_seconds)
            try:
                success = await self.sync_day(user_id, day, credential)
                outcomes.append(SyncOutcome(date=day, success=success))
            except Exception as exc:
                logger.exception("Error syncing user %s for date %s", user_id, day)
                outcomes.append(SyncOutcome(date=day, success=False, error=str(exc)))

        result = ParticipantSyncResult(user_id=user_id, results=outcomes)
        if result.succeeded:
            self._store.touch_last_sync(user_id)
        logger.info(
            "Synced user %s: %d/%d dates succeeded", user_id, result.succeeded, len(outcomes)
        )
        return result

    async def sync_connected_participants(
        self,
        user_ids: Optional[list[str]] = None,
        end_date: Optional[date] = None,
    ) -> BatchSyncResult:
        """Sync every participant with a stored credential, or just ``user_ids``."""
        participants = self._store.list_connected_participants(user_ids)
        logger.info("Starting Fitbit sync for %d participants", len(participants))
        return await self.sync_all(participants, end_date=end_date)
