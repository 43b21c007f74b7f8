"""
Donor availability, donation history and donation statistics.

New donor accounts start unavailable; ``toggle_availability`` is how a donor
joins (or leaves) the pool that matching draws from.  History and statistics
are read from the ``Donation`` records that ``fulfill_request`` writes, so a
rejected verification shows up there too.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.errors import NotFoundError, ValidationError
from bloodlink.models.blood_request import BloodRequest, RequestStatus
from bloodlink.models.donation import Donation, DonationStatus
from bloodlink.models.user import User, BloodGroup
from bloodlink.services.eligibility import check_eligibility
from bloodlink.services.permissions import authorize
from bloodlink.services.request_service import donation_to_dict, list_pending_verifications

logger = logging.getLogger(__name__)


async def _load_actor(db: AsyncSession, user_id: uuid.UUID | str, operation: str) -> User:
    try:
        user_id = uuid.UUID(str(user_id))
    except ValueError:
        raise ValidationError("Invalid user_id", field="user_id")
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        raise NotFoundError("User", user_id)
    authorize(operation, user.role)
    return user


def _monthly(dates: Iterable[datetime | None]) -> list[dict[str, Any]]:
    counts = Counter(d.strftime("%Y-%m") for d in dates if d is not None)
    return [{"month": month, "count": counts[month]} for month in sorted(counts)]


def _by_blood_group(groups: Iterable[BloodGroup | None]) -> list[dict[str, Any]]:
    counts = Counter(g.value for g in groups if g is not None)
    return [{"blood_group": group, "count": counts[group]} for group in sorted(counts)]


def _person(user: User | None, *fields: str) -> dict[str, Any] | None:
    if user is None:
        return None
    data = {"id": str(user.id), "name": user.name}
    for field in fields:
        data[field] = getattr(user, field)
    return data


# ---------------------------------------------------------------------------
# Donors
# ---------------------------------------------------------------------------

async def toggle_availability(
    db: AsyncSession,
    donor_id: uuid.UUID | str,
    *,
    available: bool | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Flip the donor's availability, or set it when *available* is given.

    Being available does not override the cooldown: the returned
    ``eligibility`` report says whether the donor can be matched right now.
    """
    donor = await _load_actor(db, donor_id, "toggle_availability")
    now = now or datetime.utcnow()
    donor.is_available = (not donor.is_available) if available is None else bool(available)
    donor.updated_at = now
    await db.flush()

    state = "available" if donor.is_available else "unavailable"
    logger.info("Donor %s is now %s", donor.id, state)
    return {
        "is_available": donor.is_available,
        "message": f"You are now {state} for donation",
        "eligibility": check_eligibility(donor, now),
    }


async def donation_history(db: AsyncSession, donor_id: uuid.UUID | str) -> list[dict[str, Any]]:
    """Every donation record for the donor, newest first."""
    donor = await _load_actor(db, donor_id, "donation_history")
    result = await db.execute(
        select(Donation)
        .where(Donation.donor_id == donor.id)
        .order_by(Donation.donation_date.desc(), Donation.created_at.desc())
    )
    donations = result.scalars().all()

    people_ids = {d.requester_id for d in donations} | {d.verified_by_id for d in donations}
    people: dict[uuid.UUID, User] = {}
    if people_ids:
        rows = await db.execute(select(User).where(User.id.in_(list(people_ids))))
        people = {u.id: u for u in rows.scalars().all()}

    history = []
    for donation in donations:
        data = donation_to_dict(donation)
        data["requester"] = _person(people.get(donation.requester_id))
        data["verified_by"] = _person(people.get(donation.verified_by_id), "hospital_name")
        history.append(data)
    return history


async def donor_stats(
    db: AsyncSession,
    donor_id: uuid.UUID | str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    donor = await _load_actor(db, donor_id, "donor_stats")
    rows = (await db.execute(
        select(Donation.donation_date, Donation.blood_group, Donation.status)
        .where(Donation.donor_id == donor.id)
    )).all()
    verified = sum(1 for row in rows if row.status == DonationStatus.VERIFIED)
    active = await db.scalar(
        select(func.count())
        .select_from(BloodRequest)
        .where(BloodRequest.assigned_donor_id == donor.id, BloodRequest.status == RequestStatus.MATCHED)
    )
    return {
        "total_donations": len(rows),
        "verified_donations": verified,
        "rejected_donations": len(rows) - verified,
        "donation_count": donor.donation_count or 0,
        "last_donation_date": donor.last_donation_date.isoformat() if donor.last_donation_date else None,
        "rating": {"average": donor.rating_average, "count": donor.rating_count or 0},
        "active_requests": int(active or 0),
        "is_available": bool(donor.is_available),
        "eligibility": check_eligibility(donor, now),
        "monthly": _monthly(row.donation_date for row in rows),
        "blood_groups": _by_blood_group(row.blood_group for row in rows),
    }


# ---------------------------------------------------------------------------
# Doctors
# ---------------------------------------------------------------------------

async def doctor_stats(db: AsyncSession, doctor_id: uuid.UUID | str) -> dict[str, Any]:
    """Verification totals for a doctor; ``monthly`` is keyed on verification date."""
    doctor = await _load_actor(db, doctor_id, "doctor_stats")
    rows = (await db.execute(
        select(Donation.verification_date, Donation.blood_group, Donation.status)
        .where(Donation.verified_by_id == doctor.id)
    )).all()
    verified = sum(1 for row in rows if row.status == DonationStatus.VERIFIED)
    pending = await list_pending_verifications(db, doctor.id)
    return {
        "total_verifications": len(rows),
        "verified": verified,
        "rejected": len(rows) - verified,
        "verification_count": doctor.verification_count or 0,
        "pending_verifications": len(pending),
        "monthly": _monthly(row.verification_date for row in rows),
        "blood_groups": _by_blood_group(row.blood_group for row in rows),
    }
