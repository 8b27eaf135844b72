"""
Permit number format (``permit_kernel.domain.numbering``).

Responsibility
--------------
Pure formatting and parsing of human-readable permit numbers::

    RGDGTLWP FEB 2024 - 0001     current format
    RGDGTLWP FEB - 0001          legacy format, no year token

The sequence itself is allocated by ``SequenceService``; this module only
knows what a number looks like and which bucket it belongs to.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from permit_kernel.exceptions import InvalidPermitNumberError

MONTH_ABBREVIATIONS: tuple[str, ...] = (
    "JAN", "FEB", "MAR", "APR", "MAY", "JUN",
    "JUL", "AUG", "SEP", "OCT", "NOV", "DEC",
)

SUFFIX_DIGITS = 4
MAX_SUFFIX = 10**SUFFIX_DIGITS - 1

PREFIX_PATTERN = re.compile(r"^[A-Z]+$")

# Persisted format of every number this kernel issues.
PERMIT_NUMBER_PATTERN = re.compile(r"^[A-Z]+ [A-Z]{3} \d{4} - \d{4}$")

_PARSE_PATTERN = re.compile(
    r"^(?P<prefix>[A-Z]+) (?P<month>[A-Z]{3})(?: (?P<year>\d{4}))? - (?P<suffix>\d+)$"
)


@dataclass(frozen=True, order=True)
class MonthKey:
    """Calendar month a permit number is scoped to."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"month must be 1..12, got {self.month}")
        if not 1 <= self.year <= 9999:
            raise ValueError(f"year must be 1..9999, got {self.year}")

    @classmethod
    def from_datetime(cls, when: datetime, tz: str = "UTC") -> MonthKey:
        """Month of ``when`` as seen in timezone ``tz``."""
        zone = timezone.utc if tz == "UTC" else ZoneInfo(tz)
        local = when.astimezone(zone)
        return cls(year=local.year, month=local.month)

    @property
    def abbreviation(self) -> str:
        return MONTH_ABBREVIATIONS[self.month - 1]


@dataclass(frozen=True)
class ParsedPermitNumber:
    """Components of a permit number.  ``year`` is None for legacy numbers."""

    prefix: str
    month_abbreviation: str
    year: int | None
    suffix: int

    @property
    def is_legacy(self) -> bool:
        return self.year is None


def validate_prefix(prefix: str) -> str:
    """Return ``prefix`` if it is one or more uppercase ASCII letters."""
    if not isinstance(prefix, str) or not PREFIX_PATTERN.match(prefix):
        raise InvalidPermitNumberError(
            str(prefix), "is not a valid prefix (uppercase letters only)"
        )
    return prefix


def bucket_name(prefix: str, month_key: MonthKey) -> str:
    """Counter bucket for ``prefix`` in ``month_key``: ``'RGDGTLWP FEB 2024'``."""
    return f"{validate_prefix(prefix)} {month_key.abbreviation} {month_key.year:04d}"


def format_permit_number(prefix: str, month_key: MonthKey, suffix: int) -> str:
    """Render ``PREFIX MON YYYY - NNNN``."""
    if not 1 <= suffix <= MAX_SUFFIX:
        raise InvalidPermitNumberError(
            str(suffix), f"suffix must be between 1 and {MAX_SUFFIX}"
        )
    return f"{bucket_name(prefix, month_key)} - {suffix:0{SUFFIX_DIGITS}d}"


def parse_permit_number(value: str) -> ParsedPermitNumber:
    """Split a current or legacy permit number into its components."""
    match = _PARSE_PATTERN.match(value or "")
    if match is None or match.group("month") not in MONTH_ABBREVIATIONS:
        raise InvalidPermitNumberError(
            str(value), "does not match 'PREFIX MON [YYYY] - NNNN'"
        )
    year = match.group("year")
    return ParsedPermitNumber(
        prefix=match.group("prefix"),
        month_abbreviation=match.group("month"),
        year=int(year) if year is not None else None,
        suffix=int(match.group("suffix")),
    )


def belongs_to_bucket(parsed: ParsedPermitNumber, prefix: str, month_key: MonthKey) -> bool:
    """True if ``parsed`` counts toward ``prefix``'s bucket for ``month_key``.

    Legacy numbers carry no year, so they count toward the same month of
    every year.
    """
    if parsed.prefix != prefix or parsed.month_abbreviation != month_key.abbreviation:
        return False
    return parsed.year is None or parsed.year == month_key.year
