"""Reference entities: partners, districts and schools.

These rows are maintained by the admin console. The sync core only reads
them to decide which partner owns the school a survey is filed against.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, Boolean, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldsync.database import Base, GUID, UTCDateTime, utcnow


class Partner(Base):
    """Implementing organization that owns districts."""

    __tablename__ = "partners"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    def __repr__(self) -> str:
        return f"<Partner {self.code}>"


class District(Base):
    """District assigned to exactly one partner."""

    __tablename__ = "districts"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    partner_id: Mapped[str] = mapped_column(
        GUID(),
        ForeignKey("partners.id"),
        nullable=False,
        index=True
    )
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    def __repr__(self) -> str:
        return f"<District {self.code}>"


class School(Base):
    """School selected for the survey."""

    __tablename__ = "schools"

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    district_id: Mapped[str] = mapped_column(
        GUID(),
        ForeignKey("districts.id"),
        nullable=False,
        index=True
    )
    partner_id: Mapped[str] = mapped_column(
        GUID(),
        ForeignKey("partners.id"),
        nullable=False,
        index=True
    )
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    school_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    area_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    # Relationships
    district: Mapped[District] = relationship("District", lazy="selectin")

    def __repr__(self) -> str:
        return f"<School {self.code or self.id}>"
