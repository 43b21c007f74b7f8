"""
Donor API routes.

Endpoints:
    GET /donors/eligibility      - Can the signed-in donor give blood now?
    GET /donors/nearby-requests  - Pending public requests the donor could supply
    PUT /donors/availability     - Toggle (or set) availability for matching
    GET /donors/active-requests  - Matched requests the donor has accepted
    GET /donors/donations        - Donation history, newest first
    GET /donors/stats            - Donation totals, rating and eligibility
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.db.session import get_db
from bloodlink.models.user import User
from bloodlink.api.middleware.auth import require_operation
from bloodlink.api.middleware.audit import log_audit
from bloodlink.services import donation_service, request_service
from bloodlink.services.eligibility import check_eligibility

router = APIRouter()


class AvailabilityUpdate(BaseModel):
    is_available: Optional[bool] = None


@router.get("/donors/eligibility")
async def donor_eligibility(
    current_user: User = Depends(require_operation("check_eligibility")),
):
    return check_eligibility(current_user)


@router.get("/donors/nearby-requests")
async def nearby_requests(
    radius_km: Optional[float] = Query(None, gt=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("nearby_requests")),
):
    requests = await request_service.list_nearby_requests(db, current_user.id, radius_km=radius_km)
    return {"count": len(requests), "requests": requests}


@router.put("/donors/availability")
async def toggle_availability(
    request: Request,
    payload: Optional[AvailabilityUpdate] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("toggle_availability")),
):
    """Without a body the flag is flipped; ``is_available`` sets it explicitly."""
    available = payload.is_available if payload else None
    result = await donation_service.toggle_availability(db, current_user.id, available=available)
    await log_audit(
        "availability", "user", current_user.id, current_user.id,
        details=f"is_available={result['is_available']}", request=request, db=db,
    )
    return result


@router.get("/donors/active-requests")
async def active_requests(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("active_requests")),
):
    requests = await request_service.list_active_requests(db, current_user.id)
    return {"count": len(requests), "requests": requests}


@router.get("/donors/donations")
async def donation_history(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("donation_history")),
):
    donations = await donation_service.donation_history(db, current_user.id)
    return {"count": len(donations), "donations": donations}


@router.get("/donors/stats")
async def donor_stats(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("donor_stats")),
):
    return await donation_service.donor_stats(db, current_user.id)
