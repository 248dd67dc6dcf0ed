"""
Fitbit Credential and API Models
================================
Pydantic shapes for the Fitbit OAuth token response, the per-participant
credential stored on user_profiles, and the request bodies accepted by
the Fitbit router.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class FitbitTokenResponse(BaseModel):
    """Response from POST /oauth2/token."""

    access_token: str
    refresh_token: str
    expires_in: int  # seconds until expiry
    token_type: str = "Bearer"
    scope: Optional[str] = None
    user_id: Optional[str] = None  # Fitbit's encoded user id, not ours


class FitbitCredential(BaseModel):
    """Access/refresh pair for one participant's Fitbit link."""

    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Supabase returns timestamptz with an offset, but older rows were naive
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_token_response(cls, token: FitbitTokenResponse) -> "FitbitCredential":
        return cls(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=token.expires_in),
        )

    @classmethod
    def from_profile(cls, row: dict) -> Optional["FitbitCredential"]:
        """Build from a user_profiles row; None if the participant never connected."""
        access_token = row.get("fitbit_access_token")
        refresh_token = row.get("fitbit_refresh_token")
        if not access_token or not refresh_token:
            return None
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=row.get("token_expires_at"),
        )

    def expires_within(self, seconds: int) -> bool:
        if self.expires_at is None:
            return True
        remaining = self.expires_at - datetime.now(timezone.utc)
        return remaining < timedelta(seconds=seconds)

    def replace_with(self, other: "FitbitCredential") -> None:
        """Swap all three fields at once after a refresh."""
        self.access_token = other.access_token
        self.refresh_token = other.refresh_token
        self.expires_at = other.expires_at


class SyncParticipant(BaseModel):
    """A participant to sync, with the credential read from their profile."""

    user_id: str
    credential: Optional[FitbitCredential] = None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class ConnectRequest(BaseModel):
    """Authorization code returned to the frontend by the Fitbit consent screen."""

    code: str = Field(..., min_length=1)


class ResearcherSyncRequest(BaseModel):
    """Researcher-triggered sync. No user_ids means every connected participant."""

    user_ids: Optional[list[str]] = None


class ImmediateSyncParticipant(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    token_expires_at: Optional[datetime] = None

    def to_sync_participant(self) -> SyncParticipant:
        return SyncParticipant(
            user_id=self.user_id,
            credential=FitbitCredential(
                access_token=self.access_token,
                refresh_token=self.refresh_token,
                expires_at=self.token_expires_at,
            ),
        )


class ImmediateSyncRequest(BaseModel):
    """Body posted by the periodic sync job."""

    immediate: bool = False
    participants: list[ImmediateSyncParticipant] = Field(default_factory=list)
