"""Survey natural identifiers and edit windows.

A survey is identified across all devices by
``{districtCode}-{schoolCode}-{class}-{section}-{rollNo}``, e.g.
``101-201-5-A-17``. The device builds the id when the form is opened; the
server re-validates it and stores the parsed segments alongside the record.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from fieldsync.config import get_settings

_DISTRICT_RE = re.compile(r"[0-9]{3,}")
_SCHOOL_RE = re.compile(r"[0-9]{3,}")
_CLASS_RE = re.compile(r"[0-9]+")
_SECTION_RE = re.compile(r"[A-Za-z0-9]{1,10}")
_ROLL_RE = re.compile(r"[^\r\n]{1,20}")

MIN_CLASS = 1
MAX_CLASS = 12


@dataclass(frozen=True)
class SurveyUniqueId:
    """Parsed natural identifier."""
    district_code: str
    school_code: str
    class_number: int
    section: str
    roll_no: str

    def __str__(self) -> str:
        return format_unique_id(
            self.district_code,
            self.school_code,
            self.class_number,
            self.section,
            self.roll_no,
        )


@dataclass(frozen=True)
class EditDeadlines:
    """Edit windows fixed when a record is created."""
    team: datetime
    partner: datetime


def format_unique_id(
    district_code: str,
    school_code: str,
    class_number: int | str,
    section: str,
    roll_no: str,
) -> str:
    """Build the natural id the same way the device does."""
    return f"{district_code}-{school_code}-{class_number}-{section}-{roll_no}"


def parse_unique_id(value) -> SurveyUniqueId | None:
    """Parse a natural id, or return None if it does not follow the format."""
    if not isinstance(value, str):
        return None

    # The roll number is the last segment and may not itself contain a hyphen
    parts = value.split("-")
    if len(parts) != 5:
        return None
    district, school, class_str, section, roll = parts

    if not _DISTRICT_RE.fullmatch(district):
        return None
    if not _SCHOOL_RE.fullmatch(school):
        return None
    if not _CLASS_RE.fullmatch(class_str):
        return None
    class_number = int(class_str)
    if not MIN_CLASS <= class_number <= MAX_CLASS:
        return None
    if not _SECTION_RE.fullmatch(section):
        return None
    if not _ROLL_RE.fullmatch(roll):
        return None

    return SurveyUniqueId(
        district_code=district,
        school_code=school,
        class_number=class_number,
        section=section,
        roll_no=roll,
    )


def validate_unique_id(value) -> bool:
    """Check a natural id. Never raises."""
    return parse_unique_id(value) is not None


def compute_edit_deadlines(submitted_at: datetime) -> EditDeadlines:
    """Deadlines for a record submitted at ``submitted_at``."""
    settings = get_settings()
    return EditDeadlines(
        team=submitted_at + timedelta(hours=settings.team_edit_window_hours),
        partner=submitted_at + timedelta(days=settings.partner_edit_window_days),
    )
