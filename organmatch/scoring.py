"""
Compatibility Scorer.

Responsibilities:
- Compute a deterministic compatibility score (0-100) for a donor/recipient pair.
- Emit a score breakdown that is stored with every match.

Non-Responsibilities:
- No database access.
- No candidate selection.
- No threshold decisions.

Invariant:
A score of 0 means the pair is incompatible. Every compatible pair scores
above 0, and identical inputs with the same `now` always give the same score.
"""

from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

from geopy.distance import geodesic

from .errors import InvalidInput
from .schema import (
    DONOR_FIELDS,
    RECIPIENT_FIELDS,
    snapshot,
    validate_donor,
    validate_recipient,
)

# Donor blood type -> recipient blood types it can donate to
BLOOD_COMPATIBILITY = {
    "O-": {"O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"},
    "O+": {"O+", "A+", "B+", "AB+"},
    "A-": {"A-", "A+", "AB-", "AB+"},
    "A+": {"A+", "AB+"},
    "B-": {"B-", "B+", "AB-", "AB+"},
    "B+": {"B+", "AB+"},
    "AB-": {"AB-", "AB+"},
    "AB+": {"AB+"},
}

BLOOD_BASE_POINTS = 40
MEDICAL_MAX_POINTS = 60
FACTOR_MAX_POINTS = 20

WEIGHT_MEDICAL = 0.4
WEIGHT_PROXIMITY = 0.2
WEIGHT_URGENCY = 0.2
WEIGHT_WAITING = 0.2

SAME_LOCATION_SCORE = 100.0
UNKNOWN_DISTANCE_SCORE = 50.0
NEAR_DISTANCE_SCORE = 90.0
FAR_DISTANCE_SCORE = 20.0
FAR_DISTANCE_KM = 1000.0

DEFAULT_FULLY_WAITED_DAYS = 100


@dataclass(frozen=True)
class ScoreBreakdown:
    """Score plus the sub-scores (each on a 0-100 scale) that produced it."""

    score: int
    composite: float
    blood_compatible: bool
    organ_match: bool
    age_points: int = 0
    medical: float = 0.0
    proximity: float = 0.0
    urgency: float = 0.0
    waiting: float = 0.0

    @property
    def recommendation(self) -> str:
        if self.score >= 75:
            return "Highly Recommended"
        if self.score >= 50:
            return "Recommended"
        return "Not Recommended"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["recommendation"] = self.recommendation
        return data


def _round_half_up(value: float, places: int) -> Decimal:
    quantum = Decimal(1).scaleb(-places)
    return Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)


def is_blood_compatible(donor_blood_type: str, recipient_blood_type: str) -> bool:
    return recipient_blood_type in BLOOD_COMPATIBILITY.get(donor_blood_type, set())


def age_points(age_difference: int) -> int:
    """Banded age proximity points (max 20)."""
    if age_difference <= 5:
        return 20
    if age_difference <= 10:
        return 15
    if age_difference <= 20:
        return 10
    return 5


def resolve_age(data: Dict[str, Any], now: datetime) -> int:
    if data.get("age") is not None:
        return data["age"]
    dob: date = data["date_of_birth"]
    if isinstance(dob, datetime):
        dob = dob.date()
    today = now.date()
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def _parse_coordinates(label: str) -> Optional[Tuple[float, float]]:
    parts = label.split(",")
    if len(parts) != 2:
        return None
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return lat, lng


def proximity_score(donor_location: str, recipient_location: str) -> float:
    """
    Location proximity on a 0-100 scale.

    Identical labels score 100. Two "lat,lng" labels are scored by geodesic
    distance, from 90 next door down to 20 at 1000 km or more. Any other pair
    of distinct labels scores 50.
    """
    if donor_location.strip().lower() == recipient_location.strip().lower():
        return SAME_LOCATION_SCORE

    donor_point = _parse_coordinates(donor_location)
    recipient_point = _parse_coordinates(recipient_location)
    if donor_point is None or recipient_point is None:
        return UNKNOWN_DISTANCE_SCORE

    km = min(geodesic(donor_point, recipient_point).km, FAR_DISTANCE_KM)
    span = NEAR_DISTANCE_SCORE - FAR_DISTANCE_SCORE
    return round(NEAR_DISTANCE_SCORE - span * (km / FAR_DISTANCE_KM), 1)


def urgency_points(urgency_level: int) -> int:
    """Urgency 1-10 scaled to 0-20 points."""
    return urgency_level * 2


def waiting_points(created_at: datetime, now: datetime, fully_waited_days: int = DEFAULT_FULLY_WAITED_DAYS) -> float:
    """Points for time on the waiting list, capped at 20 once fully_waited_days have passed."""
    waited_days = max((now - created_at).days, 0)
    return min(waited_days / fully_waited_days, 1.0) * FACTOR_MAX_POINTS


def score_pair(
    donor: Any,
    recipient: Any,
    now: Optional[datetime] = None,
    fully_waited_days: int = DEFAULT_FULLY_WAITED_DAYS,
) -> ScoreBreakdown:
    """
    Score a donor against a recipient.

    Args:
        donor: Mapping or object with blood_type, organ_type, location, age/date_of_birth
        recipient: Mapping or object with blood_type, organ_needed, location,
            age/date_of_birth, urgency_level, created_at
        now: Reference time for waiting-time and age (default: datetime.now())
        fully_waited_days: Waiting days that earn the full waiting-time score

    Returns:
        ScoreBreakdown whose score is 0 when the pair is incompatible

    Raises:
        InvalidInput: If a required field is missing or malformed
    """
    donor_data = snapshot(donor, DONOR_FIELDS)
    recipient_data = snapshot(recipient, RECIPIENT_FIELDS)

    errors = [f"donor: {e}" for e in validate_donor(donor_data)]
    errors += [f"recipient: {e}" for e in validate_recipient(recipient_data)]
    if errors:
        raise InvalidInput("Cannot score donor/recipient pair", errors)

    now = now or datetime.now()

    organ_match = donor_data["organ_type"] == recipient_data["organ_needed"]
    blood_compatible = is_blood_compatible(donor_data["blood_type"], recipient_data["blood_type"])
    if not (organ_match and blood_compatible):
        return ScoreBreakdown(
            score=0,
            composite=0.0,
            blood_compatible=blood_compatible,
            organ_match=organ_match,
        )

    age_diff = abs(resolve_age(donor_data, now) - resolve_age(recipient_data, now))
    points = age_points(age_diff)

    medical = (BLOOD_BASE_POINTS + points) / MEDICAL_MAX_POINTS * 100
    proximity = proximity_score(donor_data["location"], recipient_data["location"])
    urgency = urgency_points(recipient_data["urgency_level"]) / FACTOR_MAX_POINTS * 100
    waiting = waiting_points(recipient_data["created_at"], now, fully_waited_days) / FACTOR_MAX_POINTS * 100

    total = (
        WEIGHT_MEDICAL * medical
        + WEIGHT_PROXIMITY * proximity
        + WEIGHT_URGENCY * urgency
        + WEIGHT_WAITING * waiting
    )
    composite = _round_half_up(total, 1)
    score = int(_round_half_up(float(composite), 0))

    return ScoreBreakdown(
        score=score,
        composite=float(composite),
        blood_compatible=True,
        organ_match=True,
        age_points=points,
        medical=round(medical, 1),
        proximity=round(proximity, 1),
        urgency=round(urgency, 1),
        waiting=round(waiting, 1),
    )


def score(
    donor: Any,
    recipient: Any,
    now: Optional[datetime] = None,
    fully_waited_days: int = DEFAULT_FULLY_WAITED_DAYS,
) -> int:
    """Compatibility score in [0, 100]; 0 means do not match."""
    return score_pair(donor, recipient, now=now, fully_waited_days=fully_waited_days).score
