# CREATE FILE: services/routing_service/route_estimator.py

import math
from dataclasses import dataclass
from typing import Dict, Tuple

EARTH_RADIUS_MILES = 3959
ROAD_WINDING_FACTOR = 1.3  # straight line -> actual roads
AVG_CITY_SPEED_MPH = 25  # includes stops
PICKUP_DROPOFF_BUFFER_MINUTES = 10  # 5 minutes each
TIME_CAP_MARGIN_MINUTES = 10


@dataclass(frozen=True)
class RouteEstimate:
    distance_miles: float
    estimated_minutes: int
    time_cap_minutes: int

    def to_dict(self) -> Dict[str, float]:
        return {
            "distance_miles": self.distance_miles,
            "estimated_minutes": self.estimated_minutes,
            "time_cap_minutes": self.time_cap_minutes
        }


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Calculate haversine distance between two points in miles"""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_MILES * c


def estimate_route(pickup_lat: float, pickup_lng: float,
                   store_lat: float, store_lng: float) -> RouteEstimate:
    """
    Estimate driving distance and time between a pickup and a store.

    Uses the straight-line distance scaled by a road factor and a fixed
    average city speed, so no mapping provider is needed. Coordinates are
    assumed to be validated by the caller.
    """
    actual_distance_miles = haversine_miles(pickup_lat, pickup_lng, store_lat, store_lng) * ROAD_WINDING_FACTOR

    driving_minutes = (actual_distance_miles / AVG_CITY_SPEED_MPH) * 60
    estimated_minutes = math.ceil(driving_minutes + PICKUP_DROPOFF_BUFFER_MINUTES)

    return RouteEstimate(
        distance_miles=round(actual_distance_miles, 1),
        estimated_minutes=estimated_minutes,
        time_cap_minutes=estimated_minutes + TIME_CAP_MARGIN_MINUTES
    )


# St. Louis area stores until store locations are loaded from the database
STORE_COORDINATES: Dict[str, Tuple[float, float]] = {
    "Target - Brentwood": (38.6167, -90.3461),
    "Target - Chesterfield": (38.6631, -90.5772),
    "Target - South City": (38.5833, -90.2367),
    "Target - Clayton": (38.6456, -90.3234),
    "Best Buy - Brentwood": (38.6170, -90.3450),
    "Walmart - Lemay Ferry": (38.5156, -90.2881),
}

DOWNTOWN_ST_LOUIS = (38.6270, -90.1994)


def get_store_coordinates(retailer: str) -> Tuple[float, float]:
    """Look up a store's (lat, lng); unknown retailers map to downtown St. Louis"""
    return STORE_COORDINATES.get(retailer, DOWNTOWN_ST_LOUIS)
