"""
Fitbit Metric Normalisation
===========================
Pure functions that turn one day of raw Fitbit JSON into the column
values of a fitbit_data row. Each returns None when the payload has
nothing for that day, so an empty day is stored as "not synced" rather
than as zeros.
"""

from __future__ import annotations

import math
from typing import Any, Optional

from app.models.metrics import BatteryStatus


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def calculate_average_heart_rate(zones: Optional[list[dict]]) -> Optional[int]:
    """Minutes-weighted mean of each zone's midpoint, rounded half up to whole bpm.

    Zones without numeric min/max bounds are skipped.
    """
    if not zones:
        return None

    total_minutes = 0
    weighted_sum = 0.0
    for zone in zones:
        if not isinstance(zone, dict):
            continue
        low, high = zone.get("min"), zone.get("max")
        minutes = zone.get("minutes") or 0
        if not (_is_number(low) and _is_number(high) and _is_number(minutes)):
            continue
        weighted_sum += minutes * (low + high) / 2
        total_minutes += minutes

    if total_minutes <= 0:
        return None
    # .5 rounds up: 92.5 bpm is stored as 93
    return math.floor(weighted_sum / total_minutes + 0.5)


def normalise_heart_rate(payload: Optional[dict]) -> Optional[dict[str, Any]]:
    """activities-heart response → {zones, restingHeartRate, average}."""
    days = payload.get("activities-heart") if isinstance(payload, dict) else None
    first = days[0] if isinstance(days, list) and days else None
    value = first.get("value") if isinstance(first, dict) else None
    if not isinstance(value, dict) or not value:
        return None

    zones = value.get("heartRateZones")
    if not isinstance(zones, list):
        zones = []
    return {
        "zones": zones,
        "restingHeartRate": value.get("restingHeartRate"),
        "average": calculate_average_heart_rate(zones),
    }


def normalise_sleep(payload: Optional[dict]) -> Optional[dict[str, Any]]:
    """
    sleep/date response → {duration, efficiency, stages, minuteData}.

    A day can hold several sleep logs (naps); the one Fitbit flags as the
    main sleep wins, otherwise the first log.
    """
    sessions = payload.get("sleep") if isinstance(payload, dict) else None
    sessions = [s for s in sessions if isinstance(s, dict)] if isinstance(sessions, list) else []
    if not sessions:
        return None

    main = next((s for s in sessions if s.get("isMainSleep")), sessions[0])
    levels = main.get("levels")
    if not isinstance(levels, dict):
        levels = {}
    return {
        "duration": main.get("duration"),
        "efficiency": main.get("efficiency"),
        "stages": levels.get("summary"),
        "minuteData": levels.get("data"),
    }


def normalise_summary(payload: Optional[dict], key: str) -> Optional[dict[str, Any]]:
    """Generic pass-through for SpO2, HRV, breathing rate, temperature and ECG.

    Takes the first entry under ``key`` and returns its ``value`` block, or
    ``{"average": ...}`` when the value is a bare number.
    """
    entries = payload.get(key) if isinstance(payload, dict) else None
    if isinstance(entries, dict):
        entries = [entries]
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
        return None

    value = entries[0].get("value")
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    return {"average": value}


def battery_status(level: Optional[int]) -> BatteryStatus:
    if level is None:
        return "Empty"
    if level >= 75:
        return "High"
    if level >= 50:
        return "Medium"
    if level >= 25:
        return "Low"
    return "Empty"
