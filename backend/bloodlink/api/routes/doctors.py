"""
Doctor API routes.

Endpoints:
    GET /doctors/pending-verifications  - Matched requests awaiting a verifying doctor
    GET /doctors/stats                  - Verification totals for the signed-in doctor

Verification itself is ``PUT /requests/{id}/fulfill``.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.db.session import get_db
from bloodlink.models.user import User
from bloodlink.api.middleware.auth import require_operation
from bloodlink.services import donation_service, request_service

router = APIRouter()


@router.get("/doctors/pending-verifications")
async def pending_verifications(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("pending_verifications")),
):
    requests = await request_service.list_pending_verifications(db, current_user.id)
    return {"count": len(requests), "requests": requests}


@router.get("/doctors/stats")
async def doctor_stats(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_operation("doctor_stats")),
):
    return await donation_service.doctor_stats(db, current_user.id)
