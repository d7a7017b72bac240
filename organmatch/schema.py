from datetime import date, datetime
from typing import Any, Dict, List, Mapping

BLOOD_TYPES = ["O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"]
ORGAN_TYPES = ["kidney", "liver", "heart", "lung", "cornea", "pancreas"]

DONOR_FIELDS = ["id", "blood_type", "organ_type", "location", "age", "date_of_birth"]
RECIPIENT_FIELDS = [
    "id",
    "blood_type",
    "organ_needed",
    "location",
    "age",
    "date_of_birth",
    "urgency_level",
    "created_at",
]


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def snapshot(entity: Any, fields: List[str]) -> Dict[str, Any]:
    """Read the named fields from a mapping or an object (ORM row, namespace)."""
    if isinstance(entity, Mapping):
        return {f: entity.get(f) for f in fields}
    return {f: getattr(entity, f, None) for f in fields}


def parse_record(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert ISO date strings in a JSON donor/recipient record to date/datetime objects."""
    record = dict(data)
    dob = record.get("date_of_birth")
    if isinstance(dob, str):
        record["date_of_birth"] = date.fromisoformat(dob)
    created_at = record.get("created_at")
    if isinstance(created_at, str):
        record["created_at"] = datetime.fromisoformat(created_at)
    return record


def _validate_common(data: Dict[str, Any], errors: List[str]) -> None:
    blood_type = data.get("blood_type")
    if blood_type is None:
        errors.append("Missing required field: blood_type")
    elif blood_type not in BLOOD_TYPES:
        errors.append(f"Field 'blood_type' must be one of {', '.join(BLOOD_TYPES)}")

    if data.get("location") is None:
        errors.append("Missing required field: location")
    elif not _is_non_empty_str(data["location"]):
        errors.append("Field 'location' must be a non-empty string")

    age = data.get("age")
    dob = data.get("date_of_birth")
    if age is None and dob is None:
        errors.append("Missing required field: age (or date_of_birth)")
    elif age is not None and (isinstance(age, bool) or not isinstance(age, int) or age < 0):
        errors.append("Field 'age' must be a non-negative integer")
    elif age is None and not isinstance(dob, date):
        errors.append("Field 'date_of_birth' must be a date")


def _validate_organ(data: Dict[str, Any], field: str, errors: List[str]) -> None:
    organ = data.get(field)
    if organ is None:
        errors.append(f"Missing required field: {field}")
    elif organ not in ORGAN_TYPES:
        errors.append(f"Field '{field}' must be one of {', '.join(ORGAN_TYPES)}")


def validate_donor(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages for a donor snapshot.
    Empty list means the donor carries everything the scorer needs.
    """
    errors: List[str] = []
    _validate_common(data, errors)
    _validate_organ(data, "organ_type", errors)
    return errors


def validate_recipient(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages for a recipient snapshot.
    Empty list means the recipient carries everything the scorer needs.
    """
    errors: List[str] = []
    _validate_common(data, errors)
    _validate_organ(data, "organ_needed", errors)

    urgency = data.get("urgency_level")
    if urgency is None:
        errors.append("Missing required field: urgency_level")
    elif isinstance(urgency, bool) or not isinstance(urgency, int) or not 1 <= urgency <= 10:
        errors.append("Field 'urgency_level' must be an integer between 1 and 10")

    created_at = data.get("created_at")
    if created_at is None:
        errors.append("Missing required field: created_at")
    elif not isinstance(created_at, datetime):
        errors.append("Field 'created_at' must be a datetime")

    return errors
