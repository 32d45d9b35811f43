"""Survey response model.

One row per completed questionnaire. ``survey_unique_id`` is the natural
key (``{district}-{school}-{class}-{section}-{roll}``) and is unique across
the whole table; the duplicate check in the sync path relies on that
constraint rather than on an in-process lookup.
"""

from datetime import date, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import String, Integer, Date, ForeignKey, event, inspect
from sqlalchemy.orm import Mapped, mapped_column

from fieldsync.database import Base, GUID, JSONType, UTCDateTime, utcnow


# Columns that may never change once the record exists
IMMUTABLE_FIELDS = (
    "survey_unique_id",
    "district_code",
    "school_code",
    "class_number",
    "section",
    "roll_no",
    "school_id",
    "district_id",
)


class ImmutableFieldError(ValueError):
    """Attempt to modify an identity column of a persisted survey."""


class SurveyResponse(Base):
    """Completed field questionnaire."""

    __tablename__ = "survey_responses"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    survey_unique_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Parsed natural-key segments
    district_code: Mapped[str] = mapped_column(String(50), nullable=False)
    school_code: Mapped[str] = mapped_column(String(50), nullable=False)
    class_number: Mapped[int] = mapped_column(Integer, nullable=False)
    section: Mapped[str] = mapped_column(String(10), nullable=False)
    roll_no: Mapped[str] = mapped_column(String(20), nullable=False)

    # Placement
    school_id: Mapped[str] = mapped_column(GUID(), ForeignKey("schools.id"), nullable=False, index=True)
    district_id: Mapped[str] = mapped_column(GUID(), ForeignKey("districts.id"), nullable=False, index=True)
    partner_id: Mapped[str] = mapped_column(GUID(), ForeignKey("partners.id"), nullable=False, index=True)

    # Basic details
    survey_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    student_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sex: Mapped[str | None] = mapped_column(String(16), nullable=True)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    consent: Mapped[str | None] = mapped_column(String(16), nullable=True)
    area_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    school_type: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # Remaining questionnaire answers (vision, refraction, causes, barriers, follow-up, advice)
    responses: Mapped[dict[str, Any]] = mapped_column(JSONType(), nullable=False, default=dict)

    # Submission metadata
    submitted_by: Mapped[str] = mapped_column(GUID(), ForeignKey("users.id"), nullable=False, index=True)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False, index=True)
    collected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    team_edit_deadline: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    partner_edit_deadline: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SurveyResponse {self.survey_unique_id}>"


@event.listens_for(SurveyResponse, "before_update")
def _reject_identity_changes(mapper, connection, target: SurveyResponse) -> None:
    state = inspect(target)
    changed = [name for name in IMMUTABLE_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ImmutableFieldError(
            f"Cannot modify {', '.join(changed)} of survey {target.survey_unique_id}"
        )
