"""
Blood request API routes.

Endpoints:
    POST /requests                          - Open a request and alert nearby donors (requester)
    GET  /requests/{id}                     - Read a request (private ones: parties, doctors, admins)
    GET  /requests/{id}/potential-donors    - Ranked compatible donors for a pending request
    PUT  /requests/{id}/accept              - Donor takes the request (pending -> matched)
    PUT  /requests/{id}/fulfill             - Doctor verifies or rejects the donation
    PUT  /requests/{id}/cancel              - Owner or admin withdraws the request
    PUT  /requests/{id}/rate                - Owner rates the donor of a fulfilled request
    PUT  /requests/{id}/expire              - Admin expires an open request
"""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.db.session import get_db
from bloodlink.models.blood_request import Urgency, Gender
from bloodlink.models.user import User, BloodGroup
from bloodlink.api.middleware.auth import get_current_user, require_operation
from bloodlink.api.middleware.audit import log_audit
from bloodlink.services import request_service
from bloodlink.services.notification_service import NotificationDispatcher, get_dispatcher
from bloodlink.services.request_service import DonationVerification

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: list[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")


class ContactInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None


class BloodRequestCreate(BaseModel):
    blood_group: BloodGroup
    units: int = Field(..., ge=1, le=10)
    location: GeoPoint
    address: str = Field(..., min_length=1)
    need_by_date: datetime
    patient_name: str = Field(..., min_length=1, max_length=200)
    purpose: str = Field(..., min_length=1)
    diseases: list[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.MEDIUM
    patient_age: Optional[int] = Field(None, ge=0, le=150)
    patient_gender: Optional[Gender] = None
    additional_notes: Optional[str] = None
    contact: Optional[ContactInfo] = None
    is_public: bool = True
    radius_km: Optional[float] = Field(None, gt=0)


class RateDonorRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=500)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: BloodRequestCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("create")),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Create a blood request; compatible eligible donors nearby are notified."""
    longitude, latitude = payload.location.coordinates
    contact = payload.contact or ContactInfo()
    result = await request_service.create_request(
        db,
        requester_id=current_user.id,
        blood_group=payload.blood_group,
        units=payload.units,
        longitude=longitude,
        latitude=latitude,
        address=payload.address,
        need_by_date=payload.need_by_date,
        patient_name=payload.patient_name,
        purpose=payload.purpose,
        diseases=payload.diseases,
        urgency=payload.urgency,
        patient_age=payload.patient_age,
        patient_gender=payload.patient_gender,
        additional_notes=payload.additional_notes,
        contact_name=contact.name,
        contact_phone=contact.phone,
        contact_relationship=contact.relationship,
        is_public=payload.is_public,
        radius_km=payload.radius_km,
        dispatcher=dispatcher,
    )
    await log_audit(
        "create", "blood_request", result["id"], current_user.id,
        details=f"potential_donors={result['potential_donors']}", request=request, db=db,
    )
    return result


@router.get("/requests/{request_id}")
async def get_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await request_service.get_request(db, request_id, current_user.id, current_user.role)


@router.get("/requests/{request_id}/potential-donors")
async def list_potential_donors(
    request_id: UUID,
    radius_km: Optional[float] = Query(None, gt=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("list_potential_donors")),
):
    donors = await request_service.list_potential_donors(
        db, request_id, current_user.id, current_user.role, radius_km=radius_km,
    )
    return {"request_id": str(request_id), "count": len(donors), "donors": donors}


@router.put("/requests/{request_id}/accept")
async def accept_request(
    request_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("accept")),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await request_service.accept_request(db, request_id, current_user.id, dispatcher=dispatcher)
    await log_audit("accept", "blood_request", request_id, current_user.id, request=request, db=db)
    return result


@router.put("/requests/{request_id}/fulfill")
async def fulfill_request(
    request_id: UUID,
    payload: DonationVerification,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("fulfill")),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Doctor verification; ``status=rejected`` expires the request instead."""
    result = await request_service.fulfill_request(
        db, request_id, current_user.id, payload, dispatcher=dispatcher,
    )
    await log_audit(
        "fulfill", "blood_request", request_id, current_user.id,
        details=f"donation={payload.status.value}", request=request, db=db,
    )
    return result


@router.put("/requests/{request_id}/cancel")
async def cancel_request(
    request_id: UUID,
    request: Request,
    payload: Optional[ReasonRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("cancel")),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    reason = payload.reason if payload else None
    result = await request_service.cancel_request(
        db, request_id, current_user.id, current_user.role, reason=reason, dispatcher=dispatcher,
    )
    await log_audit("cancel", "blood_request", request_id, current_user.id, details=reason, request=request, db=db)
    return result


@router.put("/requests/{request_id}/rate")
async def rate_request(
    request_id: UUID,
    payload: RateDonorRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("rate")),
):
    result = await request_service.rate_request(
        db, request_id, current_user.id, payload.rating, payload.feedback,
    )
    await log_audit(
        "rate", "blood_request", request_id, current_user.id,
        details=f"rating={payload.rating}", request=request, db=db,
    )
    return result


@router.put("/requests/{request_id}/expire")
async def expire_request(
    request_id: UUID,
    request: Request,
    payload: Optional[ReasonRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("expire")),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    reason = payload.reason if payload else None
    result = await request_service.expire_request(
        db, request_id, actor_role=current_user.role, reason=reason, dispatcher=dispatcher,
    )
    await log_audit("expire", "blood_request", request_id, current_user.id, details=reason, request=request, db=db)
    return result
