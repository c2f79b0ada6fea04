"""Date of birth parsing and age arithmetic.

Identity providers in this ecosystem return dates of birth in several
layouts. Parsing is strict: a value that is not a real calendar date in a
plausible range is rejected rather than guessed at.
"""

from __future__ import annotations

import re
from datetime import date

from ageproof.models.errors import ClaimsError

MIN_BIRTH_YEAR = 1900

# (pattern, format label, group order)
_DOB_FORMATS: tuple[tuple[re.Pattern[str], str, tuple[str, str, str]], ...] = (
    (re.compile(r"^(\d{2})(\d{2})(\d{4})$"), "DDMMYYYY", ("d", "m", "y")),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), "DD-MM-YYYY", ("d", "m", "y")),
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), "DD/MM/YYYY", ("d", "m", "y")),
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), "YYYY-MM-DD", ("y", "m", "d")),
    (re.compile(r"^(\d{4})/(\d{2})/(\d{2})$"), "YYYY/MM/DD", ("y", "m", "d")),
)


def detect_dob_format(value: str) -> str | None:
    """Return the layout label of a DOB string without parsing it."""
    value = value.strip()
    for pattern, label, _ in _DOB_FORMATS:
        if pattern.match(value):
            return label
    return None


def parse_dob(value: str, today: date | None = None) -> date:
    """Parse a date of birth in any supported layout.

    Args:
        value: Raw DOB string from provider claims
        today: Reference date for the plausibility check

    Returns:
        The parsed date

    Raises:
        ClaimsError: If the value matches no layout, is not a real calendar
            date, or lies outside 1900..today
    """
    today = today or date.today()
    value = value.strip()

    for pattern, label, order in _DOB_FORMATS:
        match = pattern.match(value)
        if not match:
            continue

        parts = dict(zip(order, (int(g) for g in match.groups())))
        try:
            dob = date(parts["y"], parts["m"], parts["d"])
        except ValueError as e:
            raise ClaimsError(f"Date of birth in {label} is not a calendar date") from e

        if dob.year < MIN_BIRTH_YEAR:
            raise ClaimsError("Date of birth is before 1900")
        if dob > today:
            raise ClaimsError("Date of birth is in the future")
        return dob

    raise ClaimsError("Unsupported date of birth format")


def calculate_age(dob: date, today: date | None = None) -> int:
    """Whole years elapsed between dob and today.

    A birthday on Feb 29 is reached on Mar 1 in non-leap years.
    """
    today = today or date.today()
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return age
