"""
Fitbit Subscriptions
====================
Registers the participant with Fitbit's Subscriber API so Fitbit pushes a
notification to /api/v1/webhooks/fitbit whenever new data lands.

Subscription ids are ``{participant_id}-{collection}``. Participant ids are
UUIDs and contain hyphens, so the id is split on the last hyphen.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from app.config import Settings, get_settings
from app.db.store import FitbitStore
from app.models.fitbit import FitbitCredential
from app.services.errors import UpstreamFetchError
from app.services.fitbit_auth import AuthenticatedFetcher, build_fetcher

logger = logging.getLogger(__name__)

SUBSCRIPTION_COLLECTIONS = ("activities", "sleep")

LIST_PATH = "/1/user/-/apiSubscriptions.json"
CREATE_PATH = "/1/user/-/{collection}/apiSubscriptions/{subscription_id}.json"


def subscription_id_for(participant_id: str, collection: str) -> str:
    return f"{participant_id}-{collection}"


def parse_subscription_id(subscription_id: str) -> tuple[str, str]:
    """``"<uuid>-sleep"`` → ``("<uuid>", "sleep")``."""
    participant_id, sep, collection = subscription_id.rpartition("-")
    if not sep or not participant_id or not collection:
        raise ValueError(f"Malformed subscription id: {subscription_id!r}")
    return participant_id, collection


class FitbitSubscriptionService:
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

    async def list_subscriptions(
        self, participant_id: str, credential: FitbitCredential
    ) -> list[dict]:
        response = await self._fetcher.fetch(
            participant_id, credential, f"{self._settings.fitbit_api_base_url}{LIST_PATH}"
        )
        if not response.is_success:
            raise UpstreamFetchError(response.status_code, response.text)
        return response.json().get("apiSubscriptions", [])

    async def ensure_subscriptions(
        self, participant_id: str, credential: FitbitCredential
    ) -> list[str]:
        """Create whichever collection subscriptions are missing. Returns the ones created."""
        existing = {
            s.get("collectionType")
            for s in await self.list_subscriptions(participant_id, credential)
        }

        created: list[str] = []
        for collection in SUBSCRIPTION_COLLECTIONS:
            if collection in existing:
                continue
            path = CREATE_PATH.format(
                collection=collection,
                subscription_id=subscription_id_for(participant_id, collection),
            )
            response = await self._fetcher.fetch(
                participant_id,
                credential,
                f"{self._settings.fitbit_api_base_url}{path}",
                method="POST",
            )
            if not response.is_success:
                raise UpstreamFetchError(response.status_code, response.text)
            created.append(collection)

        if created:
            logger.info("Created Fitbit subscriptions %s for user %s", created, participant_id)
        return created
