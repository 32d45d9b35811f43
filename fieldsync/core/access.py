"""Partner-scoped access to schools.

Every school belongs to a district and every district to one partner. Field
staff may only file surveys against schools of their own partner; the
administrative roles see every school. Both the bulk sync path and single
submission go through :func:`resolve_school_access`.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.models import District, School


class AccessDenial(str, Enum):
    """Why access was refused. Kept for audit; callers only see "denied"."""
    SCHOOL_NOT_FOUND = "school_not_found"
    PARTNER_MISMATCH = "partner_mismatch"
    NO_PARTNER = "no_partner"


@dataclass
class SchoolAccess:
    """Result of an access check for one school."""
    allowed: bool
    school_id: str
    district_id: Optional[str] = None
    partner_id: Optional[str] = None
    denial: Optional[AccessDenial] = None


async def resolve_school_access(db: AsyncSession, user, school_id: str) -> SchoolAccess:
    """Decide whether ``user`` may file surveys against ``school_id``.

    ``user`` is anything with ``partner_id`` and ``is_admin`` (a ``User`` row
    or a ``DeviceUser`` snapshot). On success the school's district and owning
    partner are returned so the caller can stamp them on the new record.
    """
    school = await db.get(School, str(school_id)) if school_id else None
    if school is None:
        return SchoolAccess(allowed=False, school_id=school_id, denial=AccessDenial.SCHOOL_NOT_FOUND)

    district = await db.get(District, school.district_id)
    owner = district.partner_id if district is not None else None

    if user.is_admin:
        return SchoolAccess(
            allowed=owner is not None,
            school_id=school.id,
            district_id=school.district_id,
            partner_id=owner,
            denial=None if owner is not None else AccessDenial.NO_PARTNER,
        )

    if not user.partner_id or owner is None:
        return SchoolAccess(
            allowed=False,
            school_id=school.id,
            district_id=school.district_id,
            partner_id=owner,
            denial=AccessDenial.NO_PARTNER,
        )

    if str(user.partner_id) != str(owner):
        return SchoolAccess(
            allowed=False,
            school_id=school.id,
            district_id=school.district_id,
            partner_id=owner,
            denial=AccessDenial.PARTNER_MISMATCH,
        )

    return SchoolAccess(
        allowed=True,
        school_id=school.id,
        district_id=school.district_id,
        partner_id=owner,
    )


async def is_authorized_for_school(db: AsyncSession, user, school_id: str) -> bool:
    """Shorthand for ``resolve_school_access(...).allowed``."""
    access = await resolve_school_access(db, user, school_id)
    return access.allowed


def can_view_partner(user, partner_id: str) -> bool:
    """Whether ``user`` may list the schools of ``partner_id``."""
    if user.is_admin:
        return True
    return bool(user.partner_id) and str(user.partner_id) == str(partner_id)
