"""
Sync Errors
===========
Failure taxonomy shared by the token, sync and device services.

Granularity decides what happens to each one: per-date and per-device
failures become recorded outcomes, a missing credential aborts that
participant's cycle, and nothing is retried beyond the single
refresh-and-retry in the authenticated fetcher.
"""

from __future__ import annotations


class FitbitError(Exception):
    """Base class for every error raised by the sync engine."""


class AuthError(FitbitError):
    """Credential missing or invalid. Do not attempt a sync."""


class TokenRefreshError(FitbitError):
    """The token endpoint rejected a refresh or code exchange."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Fitbit token exchange failed {status_code}: {body}")


class UpstreamFetchError(FitbitError):
    """Non-ok, non-401 response from a Fitbit data endpoint."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Fitbit API error {status_code}: {body}")


class InvalidDeviceData(FitbitError):
    """Device list payload was not the expected JSON array."""


class PersistenceError(FitbitError):
    """A Supabase write or read failed."""
