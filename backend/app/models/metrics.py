"""
Metric, Device and Sync Result Schemas
======================================
Rows written by the sync engine and the structured results it returns.

The JSON column shapes (heart_rate, sleep) keep Fitbit's camelCase keys
because the researcher dashboard charts read them directly.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

BatteryStatus = Literal["High", "Medium", "Low", "Empty"]
DeviceType = Literal["TRACKER", "SCALE"]


# ---------------------------------------------------------------------------
# Stored rows
# ---------------------------------------------------------------------------

class DailyMetricRecord(BaseModel):
    """One participant-day in fitbit_data. UNIQUE(user_id, date)."""

    user_id: str
    date: date
    heart_rate: Optional[dict[str, Any]] = None
    sleep: Optional[dict[str, Any]] = None
    hrv: Optional[dict[str, Any]] = None
    oxygen_saturation: Optional[dict[str, Any]] = None
    respiratory_rate: Optional[dict[str, Any]] = None
    temperature: Optional[dict[str, Any]] = None
    ecg: Optional[dict[str, Any]] = None

    def to_row(self) -> dict:
        return self.model_dump(mode="json")


class DeviceRecord(BaseModel):
    """One row in user_devices. Keyed on (user_id, device_id)."""

    user_id: str
    device_id: str
    device_version: Optional[str] = None
    type: DeviceType = "TRACKER"
    battery: BatteryStatus = "Empty"
    battery_level: Optional[int] = Field(default=None, ge=0, le=100)
    last_sync_time: Optional[datetime] = None
    mac: Optional[str] = None
    features: list[str] = Field(default_factory=list)

    def to_row(self) -> dict:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------

class SyncOutcome(BaseModel):
    """Result of syncing one participant for one date."""

    date: date
    success: bool
    error: Optional[str] = None


class ParticipantSyncResult(BaseModel):
    user_id: str
    results: list[SyncOutcome] = Field(default_factory=list)
    # Set when the whole cycle was skipped, e.g. no credential
    error: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)


class BatchSyncResult(BaseModel):
    """Aggregate of one orchestrated pass over participants × dates.

    ``success`` only reflects whether the orchestration itself completed;
    individual failures live inside ``results``.
    """

    success: bool
    results: list[ParticipantSyncResult] = Field(default_factory=list)
    error: Optional[str] = None


class DeviceSyncSummary(BaseModel):
    """Per-participant device sync outcome for the all-settled fan-out."""

    user_id: str
    devices: list[DeviceRecord] = Field(default_factory=list)
    error: Optional[str] = None


class ResearcherSyncResponse(BaseModel):
    sync: BatchSyncResult
    devices: list[DeviceSyncSummary] = Field(default_factory=list)
