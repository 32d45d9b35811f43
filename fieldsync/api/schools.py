"""School list API routes.

Devices download the schools they may survey before filling a form.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.auth.device import DeviceAuth
from fieldsync.core.access import can_view_partner
from fieldsync.core.logging import get_logger
from fieldsync.database import get_db
from fieldsync.models import District, School
from fieldsync.schemas import CamelModel

logger = get_logger(__name__)

router = APIRouter(prefix="/api/schools", tags=["schools"])


class SchoolInfo(CamelModel):
    """School as shown on the device."""

    id: str
    name: str
    code: str | None = None
    district_id: str
    district_name: str
    address: str | None = None
    school_type: str = "other"
    area_type: str = "rural"
    is_active: bool


class SchoolListResponse(CamelModel):
    """Active schools of one partner."""

    success: bool
    schools: list[SchoolInfo]


@router.get("", response_model=SchoolListResponse)
@router.get("/by-partner", response_model=SchoolListResponse)
async def list_partner_schools(
    auth: DeviceAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
    partner_id: Annotated[str | None, Query(alias="partnerId")] = None,
):
    """List a partner's active schools with their district names, by name.

    Defaults to the caller's own partner. Only the administrative roles may
    ask for another partner.
    """
    partner_id = partner_id or auth.user.partner_id
    if not partner_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Partner ID is required",
        )

    if not can_view_partner(auth.user, partner_id):
        logger.warning("Cross-partner school list refused", partner_id=partner_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied: Cannot access schools from other partners",
        )

    result = await db.execute(
        select(School, District)
        .join(District, School.district_id == District.id)
        .where(District.partner_id == partner_id, School.is_active == True)  # noqa: E712
        .order_by(School.name)
    )

    return SchoolListResponse(
        success=True,
        schools=[
            SchoolInfo(
                id=school.id,
                name=school.name,
                code=school.code,
                district_id=school.district_id,
                district_name=district.name,
                address=school.address,
                school_type=school.school_type or "other",
                area_type=school.area_type or "rural",
                is_active=school.is_active,
            )
            for school, district in result.all()
        ],
    )
