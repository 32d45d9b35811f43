"""Survey payload schemas.

Two views of the same questionnaire document:

- ``SurveyPayload`` is what bulk sync accepts: only the school and the natural
  id are required, everything else is carried through as answers.
- ``SurveySubmission`` is the full questionnaire required by single submit.
"""

from datetime import date, datetime
from functools import lru_cache
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from fieldsync.schemas import to_camel


# Fields stored in their own columns rather than in the answers document
COLUMN_FIELDS = {
    "local_id",
    "school_id",
    "survey_unique_id",
    "district_id",
    "survey_date",
    "student_name",
    "sex",
    "age",
    "consent",
    "area_type",
    "school_type",
    "class_number",
    "section",
    "roll_no",
    "submitted_at",
}

ID_FIELDS = ("school_id", "survey_unique_id", "local_id", "district_id")


@lru_cache(maxsize=None)
def _adapter(annotation: Any) -> TypeAdapter:
    return TypeAdapter(annotation)


def _id_value(v: Any) -> Any:
    if isinstance(v, int) and not isinstance(v, bool):
        return str(v)
    return v


class SurveyPayload(BaseModel):
    """Decoded survey document as sent by a device.

    Only ``schoolId`` and ``surveyUniqueId`` must be usable. A column value of
    the wrong type is stored as None and its raw value is kept under
    ``unparsedFields`` in the answers, so an offline record is never dropped
    over one odd answer.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        str_strip_whitespace=True,
    )

    school_id: str = Field(min_length=1)
    survey_unique_id: str = Field(min_length=1)
    local_id: Optional[str] = None
    district_id: Optional[str] = None

    # Basic details
    survey_date: Optional[date] = None
    student_name: Optional[str] = None
    sex: Optional[str] = None
    age: Optional[int] = None
    consent: Optional[str] = None
    area_type: Optional[str] = None
    school_type: Optional[str] = None
    class_number: Optional[int] = Field(default=None, alias="class")
    section: Optional[str] = None
    roll_no: Optional[str] = None

    # When the device finished the form
    submitted_at: Optional[datetime] = None

    # Raw values of columns that could not be parsed, by wire name
    unparsed_fields: dict[str, Any] = Field(default_factory=dict)

    # Columns whose bad values are set aside instead of failing validation
    LENIENT_FIELDS: ClassVar[tuple[str, ...]] = (
        "local_id", "district_id", "survey_date", "student_name", "sex", "age",
        "consent", "area_type", "school_type", "class_number", "section",
        "roll_no", "submitted_at",
    )

    @model_validator(mode="before")
    @classmethod
    def _set_aside_unparseable(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not cls.LENIENT_FIELDS:
            return data
        data = dict(data)
        unparsed = {}
        for name in cls.LENIENT_FIELDS:
            field = cls.model_fields[name]
            for key in {field.alias or name, name}:
                value = data.get(key)
                if value is None:
                    continue
                if name in ID_FIELDS:
                    value = _id_value(value)
                try:
                    _adapter(field.annotation).validate_python(value)
                except ValidationError:
                    unparsed[key] = data.pop(key)
        if unparsed:
            earlier = data.get("unparsedFields")
            data["unparsedFields"] = {**(earlier if isinstance(earlier, dict) else {}), **unparsed}
        return data

    @field_validator(*ID_FIELDS, mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return _id_value(v)

    def answers(self) -> dict[str, Any]:
        """Questionnaire answers that do not have a dedicated column."""
        answers = self.model_dump(
            mode="json",
            by_alias=True,
            exclude=COLUMN_FIELDS,
            exclude_none=True,
        )
        if not answers.get("unparsedFields"):
            answers.pop("unparsedFields", None)
        return answers


class SurveySubmission(SurveyPayload):
    """Complete questionnaire for single-record submission."""

    LENIENT_FIELDS: ClassVar[tuple[str, ...]] = ()

    local_id: str = Field(min_length=1)
    district_id: str = Field(min_length=1)
    survey_date: date
    student_name: str = Field(min_length=1)
    sex: str
    age: int = Field(ge=0, le=30)
    consent: str
    area_type: str
    school_type: str
    class_number: int = Field(alias="class", ge=1, le=12)
    section: str = Field(min_length=1)
    roll_no: str = Field(min_length=1)

    # Distance vision
    uses_distance_glasses: bool
    presenting_va_right_eye: str
    presenting_va_left_eye: str
    referred_for_refraction: bool

    # Advice
    spectacles_prescribed: bool
    referred_to_ophthalmologist: bool
