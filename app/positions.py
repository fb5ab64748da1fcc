from __future__ import annotations

from typing import Dict, Iterable, List, Optional


AVAILABLE = "Available"
FREE = "Free"
SICK = "Sick"
VACATION = "Vacation"
TRAVEL = "Travel"
UNAVAILABLE = "Unavailable"

# Labels that record why a person is away for the day.
ABSENCE_POSITIONS: List[str] = [FREE, SICK, VACATION, TRAVEL, UNAVAILABLE]

DEFAULT_ABSENCE_BLOCKING: Dict[str, bool] = {
    FREE: True,
    SICK: True,
    VACATION: True,
    UNAVAILABLE: True,
    TRAVEL: False,
}

CATEGORY_DUTY = "Duty"
CATEGORY_ROTATION = "Rotation"
CATEGORY_CONFERENCE = "Conference"
CATEGORY_CUSTOM = "Custom"
CATEGORIES: List[str] = [CATEGORY_DUTY, CATEGORY_ROTATION, CATEGORY_CONFERENCE, CATEGORY_CUSTOM]

# One person per cell; a second assignment displaces the first.
EXCLUSIVE_CATEGORIES = {CATEGORY_DUTY, CATEGORY_CONFERENCE}

# Used when a workplace leaves allowsRotationConcurrency unset.
ROTATION_CONCURRENCY_DEFAULTS: Dict[str, bool] = {
    CATEGORY_DUTY: True,
    CATEGORY_ROTATION: True,
    CATEGORY_CONFERENCE: True,
    CATEGORY_CUSTOM: True,
}

PERSON_ROLES: List[str] = [
    "Chief Physician",
    "Senior Physician",
    "Specialist",
    "Resident",
    "Non-Radiologist",
]
DEFAULT_SPECIALIST_ROLES: List[str] = ["Chief Physician", "Senior Physician", "Specialist"]
DEFAULT_ASSISTANT_ROLES: List[str] = ["Resident"]

_CATEGORY_ALIASES: Dict[str, str] = {
    "duty": CATEGORY_DUTY,
    "duties": CATEGORY_DUTY,
    "service": CATEGORY_DUTY,
    "services": CATEGORY_DUTY,
    "rotation": CATEGORY_ROTATION,
    "rotations": CATEGORY_ROTATION,
    "conference": CATEGORY_CONFERENCE,
    "demonstration": CATEGORY_CONFERENCE,
    "custom": CATEGORY_CUSTOM,
}


def normalize_position(position: Optional[str]) -> str:
    return (position or "").strip()


def normalize_category(category: Optional[str]) -> str:
    label = (category or "").strip().lower()
    if not label:
        return CATEGORY_CUSTOM
    return _CATEGORY_ALIASES.get(label, CATEGORY_CUSTOM)


def is_absence(position: Optional[str]) -> bool:
    return normalize_position(position) in ABSENCE_POSITIONS


def is_exclusive_category(category: Optional[str]) -> bool:
    return normalize_category(category) in EXCLUSIVE_CATEGORIES


def role_rank(role: Optional[str]) -> int:
    """Return the position of a role in the seniority order; unknown roles sort last."""
    label = (role or "").strip().lower()
    for index, name in enumerate(PERSON_ROLES):
        if label == name.lower():
            return index
    return len(PERSON_ROLES)


def role_in(role: Optional[str], roles: Iterable[str]) -> bool:
    label = (role or "").strip().lower()
    if not label:
        return False
    return any(label == (candidate or "").strip().lower() for candidate in roles)
