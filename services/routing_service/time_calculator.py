# CREATE FILE: services/routing_service/time_calculator.py

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

PICKUP_DROPOFF_BUFFER_MINUTES = 10
TIME_CAP_MARGIN_MINUTES = 10

PEAK_MULTIPLIER = 1.2
OFF_PEAK_MULTIPLIER = 1.0
PEAK_START_HOUR = 17
PEAK_END_HOUR = 19  # exclusive


@dataclass(frozen=True)
class TimeEstimate:
    estimated_minutes: int
    time_cap_minutes: int
    estimated_delivery_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimated_minutes": self.estimated_minutes,
            "time_cap_minutes": self.time_cap_minutes,
            "estimated_delivery_time": self.estimated_delivery_time.isoformat()
        }


def calculate_estimated_time(distance_miles: float, avg_speed_mph: float = 30,
                             now: Optional[datetime] = None) -> TimeEstimate:
    """
    Estimate delivery time for a route whose distance is already known.

    Args:
        distance_miles: Route distance, e.g. from a mapping provider
        avg_speed_mph: Average city speed
        now: Reference time for the delivery timestamp (defaults to now)
    """
    base_minutes = (distance_miles / avg_speed_mph) * 60
    estimated_minutes = math.ceil(base_minutes + PICKUP_DROPOFF_BUFFER_MINUTES)

    now = now or datetime.now()

    return TimeEstimate(
        estimated_minutes=estimated_minutes,
        time_cap_minutes=estimated_minutes + TIME_CAP_MARGIN_MINUTES,
        estimated_delivery_time=now + timedelta(minutes=estimated_minutes)
    )


def calculate_billable_time(actual_minutes: float, estimated_minutes: int) -> float:
    """
    Clamp actual delivery time into the paid window around the estimate.

    Drivers are paid 1:1 between estimated - 10 (never below zero) and
    estimated + 10 minutes. Overruns past the cap are a support matter.
    """
    min_time = max(estimated_minutes - TIME_CAP_MARGIN_MINUTES, 0)
    max_time = estimated_minutes + TIME_CAP_MARGIN_MINUTES

    return min(max(actual_minutes, min_time), max_time)


def calculate_actual_duration(pickup_time: datetime, dropoff_time: datetime) -> int:
    """
    Minutes from pickup to dropoff, rounded up.

    A dropoff before the pickup yields a negative value; callers treat that
    as a data-integrity error rather than billable time.
    """
    duration_seconds = (dropoff_time - pickup_time).total_seconds()
    return math.ceil(duration_seconds / 60)


def get_time_peak_multiplier(timestamp: Optional[datetime] = None) -> float:
    """Return 1.2 during weekday rush hour (17:00-18:59 local), 1.0 otherwise"""
    timestamp = timestamp or datetime.now()

    is_weekday = timestamp.weekday() < 5
    is_peak_hour = PEAK_START_HOUR <= timestamp.hour < PEAK_END_HOUR

    return PEAK_MULTIPLIER if is_weekday and is_peak_hour else OFF_PEAK_MULTIPLIER


def format_duration(minutes: int) -> str:
    """Format minutes for display: 15 min, 1 hr, 1 hr 15 min"""
    if minutes < 60:
        return f"{minutes} min"

    hours, mins = divmod(minutes, 60)
    if mins == 0:
        return f"{hours} hr"

    return f"{hours} hr {mins} min"


def calculate_eta(estimated_minutes: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """ETA timestamp plus a 12-hour clock label (e.g. 5:07 PM)"""
    eta = (now or datetime.now()) + timedelta(minutes=estimated_minutes)

    display_hour = eta.hour % 12 or 12
    am_pm = "PM" if eta.hour >= 12 else "AM"

    return {
        "eta": eta,
        "eta_formatted": f"{display_hour}:{eta.minute:02d} {am_pm}"
    }


def get_time_estimate_explanation(route_distance_miles: float, estimated_minutes: int,
                                  time_cap_minutes: int, avg_speed_mph: float = 30) -> str:
    """Plain-text breakdown of an estimate and the paid time window, for customer and driver screens"""
    floor_minutes = max(estimated_minutes - TIME_CAP_MARGIN_MINUTES, 0)

    lines = [
        "Time Estimate Breakdown:",
        "",
        f"Route Distance: {route_distance_miles:.1f} miles",
        f"Estimated Time: {format_duration(estimated_minutes)}",
        f"Time Cap (for payment): {format_duration(time_cap_minutes)}",
        "",
        "How it works:",
        f"- Estimated time is based on route distance and average city speed ({avg_speed_mph:g} mph)",
        f"- We add {PICKUP_DROPOFF_BUFFER_MINUTES} minutes buffer for pickup and dropoff",
        "- Payment is calculated based on ACTUAL time, but capped at:",
        f"  - Minimum: {format_duration(floor_minutes)}",
        f"  - Maximum: {format_duration(estimated_minutes + TIME_CAP_MARGIN_MINUTES)}",
    ]

    return "\n".join(lines)
