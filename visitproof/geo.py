"""
Geofence scoring for visitproof.

Turns the distance between a visitor's reported position and the venue into
the GPS component of the presence score, and computes server-side hints of
a spoofed location. The hints are advisory; they never change the score.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

EARTH_RADIUS_M = 6_371_000.0
DEFAULT_MAX_RANGE_M = 100.0

# Distance bands (metres) and their scores, tightest first. Beyond the
# last band but within max_range scores NEAR_SCORE.
EXACT_RADIUS_M = 20.0
EXACT_SCORE = 40
CLOSE_RADIUS_M = 50.0
CLOSE_SCORE = 35
NEAR_SCORE = 25

# Spoofing heuristics
MAX_PLAUSIBLE_SPEED_KMH = 200.0
FAST_SPEED_KMH = 50.0
MAX_REAL_DECIMALS = 10
MIN_REAL_ACCURACY_M = 1.0
POOR_ACCURACY_M = 500.0


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class GpsVerificationResult:
    """
    GPS component of a verification.

    accuracy is the distance band: "exact", "close", "near" or "far".
    """
    score: int
    distance: int
    accuracy: str
    within_range: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "distance": self.distance,
            "accuracy": self.accuracy,
            "within_range": self.within_range,
        }


@dataclass(frozen=True)
class GpsSpoofingHints:
    suspicious_speed: bool = False
    inconsistent_accuracy: bool = False
    mock_location_detected: bool = False
    risk_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suspicious_speed": self.suspicious_speed,
            "inconsistent_accuracy": self.inconsistent_accuracy,
            "mock_location_detected": self.mock_location_detected,
            "risk_score": self.risk_score,
        }


def calculate_distance(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in metres (haversine)."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = math.radians(b.latitude - a.latitude)
    d_lng = math.radians(b.longitude - a.longitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_within_radius(point: Coordinates, center: Coordinates, radius: float) -> bool:
    return calculate_distance(point, center) <= radius


def verify_gps_location(
    user_location: Coordinates,
    popup_location: Coordinates,
    max_range: Optional[float] = None
) -> GpsVerificationResult:
    """
    Score a reported position against the venue.

    Args:
        user_location: Position reported by the visitor's device
        popup_location: Venue position
        max_range: Outer acceptance radius in metres (default 100)

    Returns:
        GpsVerificationResult; score never exceeds 40 and falls with distance
    """
    if max_range is None:
        max_range = DEFAULT_MAX_RANGE_M

    distance = int(round(calculate_distance(user_location, popup_location)))
    within_range = distance <= max_range

    if distance <= EXACT_RADIUS_M:
        score, band = EXACT_SCORE, "exact"
    elif distance <= CLOSE_RADIUS_M:
        score, band = CLOSE_SCORE, "close"
    elif within_range:
        score, band = NEAR_SCORE, "near"
    else:
        score, band = 0, "far"

    return GpsVerificationResult(score=score, distance=distance, accuracy=band, within_range=within_range)


def format_distance(metres: float) -> str:
    """Human readable distance: "850m" below one kilometre, "1.2km" above."""
    if metres < 1000:
        return f"{int(round(metres))}m"
    return f"{metres / 1000:.1f}km"


def _decimal_places(value: float) -> int:
    text = repr(float(value))
    if "e" in text or "E" in text or "." not in text:
        return 0
    return len(text.split(".")[1])


def analyze_gps_spoofing(
    current: Coordinates,
    previous: Optional[Coordinates] = None,
    previous_timestamp: Optional[float] = None,
    current_timestamp: Optional[float] = None,
    reported_accuracy: Optional[float] = None
) -> GpsSpoofingHints:
    """
    Server-side indicators of a faked position.

    Client-side mock-location detection is more reliable; this is a secondary
    check. Timestamps are Unix seconds.

    Returns:
        GpsSpoofingHints with risk_score in 0..100
    """
    risk = 0
    suspicious_speed = False
    inconsistent_accuracy = False

    # Real GPS fixes carry 6-8 decimal places
    if (_decimal_places(current.latitude) > MAX_REAL_DECIMALS
            or _decimal_places(current.longitude) > MAX_REAL_DECIMALS):
        risk += 20

    if previous is not None and previous_timestamp is not None and current_timestamp is not None:
        elapsed = current_timestamp - previous_timestamp
        if elapsed > 0:
            speed_kmh = calculate_distance(previous, current) / elapsed * 3.6
            if speed_kmh > MAX_PLAUSIBLE_SPEED_KMH:
                suspicious_speed = True
                risk += 40
            elif speed_kmh > FAST_SPEED_KMH:
                risk += 10

    if reported_accuracy is not None:
        if reported_accuracy < MIN_REAL_ACCURACY_M:
            inconsistent_accuracy = True
            risk += 30
        if reported_accuracy > POOR_ACCURACY_M:
            risk += 10

    return GpsSpoofingHints(
        suspicious_speed=suspicious_speed,
        inconsistent_accuracy=inconsistent_accuracy,
        risk_score=min(100, risk),
    )
