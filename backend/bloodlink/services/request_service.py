"""
Blood request lifecycle: create, accept, fulfil, cancel, rate and expire.

    pending --accept--> matched --fulfil (verified)--> fulfilled
       |                   |------fulfil (rejected)--> expired
       |--cancel--> cancelled <--cancel--|
       |--expire--> expired   <--expire--|

Each mutation loads the request, checks role, ownership and current status,
then writes with an UPDATE guarded on the statuses it accepts.  A guard that
matches no row means another caller changed the request first, and the
loser gets ``InvalidStateError``.  Within one process the same request id is
additionally serialised by an ``asyncio.Lock``.  The caller's session owns
the transaction (``get_db`` commits or rolls back), so the status change,
donor statistics and donation record are written together or not at all.

Notifications are queued on the session with ``defer`` and only go out once
the caller commits (see ``notification_service.deliver_pending``).  A
rollback drops them, and a failed delivery never fails the operation.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from bloodlink.errors import (
    AuthorizationError, EligibilityError, IncompatibilityError, InvalidStateError,
    NotFoundError, ValidationError,
)
from bloodlink.models.blood_request import (
    BloodRequest, RequestStatus, Urgency, Gender, TERMINAL_STATUSES,
)
from bloodlink.models.donation import Donation, DonationStatus
from bloodlink.models.notification import NotificationType
from bloodlink.models.user import User, UserRole, BloodGroup
from bloodlink.services.compatibility import can_donate, parse_blood_group
from bloodlink.services.eligibility import ineligibility_reason, next_eligible_date
from bloodlink.services.matching_service import (
    candidate_to_dict, find_candidates, find_nearby_requests, validate_coordinates,
)
from bloodlink.services.permissions import as_role, authorize
from bloodlink.services.notification_service import (
    NotificationDispatcher, NotificationPayload, defer, get_dispatcher,
)

logger = logging.getLogger(__name__)

S = RequestStatus

ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    S.PENDING: frozenset({S.MATCHED, S.CANCELLED, S.EXPIRED}),
    S.MATCHED: frozenset({S.FULFILLED, S.CANCELLED, S.EXPIRED}),
    S.FULFILLED: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

# Roles that may read private requests they are not party to
_PRIVATE_READERS = frozenset({UserRole.DOCTOR, UserRole.ADMIN})

_STATUS_MESSAGES = {
    S.PENDING: "Request is still pending",
    S.MATCHED: "Request already matched",
    S.FULFILLED: "Request already fulfilled",
    S.CANCELLED: "Request has been cancelled",
    S.EXPIRED: "Request has expired",
}

_request_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


class DonationVerification(BaseModel):
    """What the verifying doctor reports when closing a matched request."""

    status: DonationStatus = DonationStatus.VERIFIED
    donation_date: datetime
    hospital_name: str = Field(..., min_length=1)
    hospital_address: str | None = None
    hospital_phone: str | None = None
    units: int | None = Field(default=None, ge=1, le=10)
    notes: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _as_uuid(value: Any, field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}", field=field)


def _request_lock(request_id: uuid.UUID) -> asyncio.Lock:
    lock = _request_locks.get(request_id)
    if lock is None:
        lock = _request_locks[request_id] = asyncio.Lock()
    return lock


def _round_rating(value: float) -> float:
    """One decimal, halves rounded up (4.25 -> 4.3), unlike ``round()``."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _state_error(status: RequestStatus, operation: str) -> InvalidStateError:
    return InvalidStateError(f"{_STATUS_MESSAGES[status]}; cannot {operation}", status)


def _ensure_transition(current: RequestStatus, target: RequestStatus, operation: str) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise _state_error(current, operation)


def _request_to_dict(req: BloodRequest, now: datetime | None = None) -> dict[str, Any]:
    contact = None
    if req.contact_name or req.contact_phone:
        contact = {
            "name": req.contact_name,
            "phone": req.contact_phone,
            "relationship": req.contact_relationship,
        }
    hospital = None
    if req.hospital_name:
        hospital = {
            "name": req.hospital_name,
            "address": req.hospital_address,
            "phone": req.hospital_phone,
        }
    rating = None
    if req.donor_rating is not None:
        rating = {"rating": req.donor_rating, "feedback": req.donor_feedback, "rated_at": _iso(req.rated_at)}

    return {
        "id": str(req.id),
        "requester_id": str(req.requester_id),
        "blood_group": req.blood_group.value if req.blood_group else None,
        "units": req.units,
        "diseases": list(req.diseases or []),
        "urgency": req.urgency.value if req.urgency else None,
        "patient_name": req.patient_name,
        "patient_age": req.patient_age,
        "patient_gender": req.patient_gender.value if req.patient_gender else None,
        "purpose": req.purpose,
        "additional_notes": req.additional_notes,
        "location": {"type": "Point", "coordinates": [req.longitude, req.latitude]},
        "address": req.address,
        "need_by_date": _iso(req.need_by_date),
        "contact": contact,
        "is_public": req.is_public,
        "status": req.status.value if req.status else None,
        "assigned_donor_id": str(req.assigned_donor_id) if req.assigned_donor_id else None,
        "matched_at": _iso(req.matched_at),
        "verified_by_id": str(req.verified_by_id) if req.verified_by_id else None,
        "verified_at": _iso(req.verified_at),
        "fulfilled_at": _iso(req.fulfilled_at),
        "hospital": hospital,
        "verification_notes": req.verification_notes,
        "donor_rating": rating,
        "time_remaining_seconds": req.time_remaining_seconds(now),
        "is_urgent": req.is_urgent(now),
        "created_at": _iso(req.created_at),
        "updated_at": _iso(req.updated_at),
    }


def donation_to_dict(d: Donation) -> dict[str, Any]:
    return {
        "id": str(d.id),
        "donor_id": str(d.donor_id),
        "requester_id": str(d.requester_id),
        "request_id": str(d.request_id),
        "blood_group": d.blood_group.value if d.blood_group else None,
        "units": d.units,
        "donation_date": _iso(d.donation_date),
        "hospital_name": d.hospital_name,
        "hospital_address": d.hospital_address,
        "verified_by_id": str(d.verified_by_id),
        "verification_date": _iso(d.verification_date),
        "status": d.status.value if d.status else None,
        "notes": d.notes,
    }


def _payload(
    req: BloodRequest,
    title: str,
    message: str,
    type_: NotificationType,
    **details: Any,
) -> NotificationPayload:
    return NotificationPayload(
        title=title,
        message=message,
        type=type_,
        action_url=f"/requests/{req.id}",
        related_model="BloodRequest",
        related_id=str(req.id),
        details={"request_id": str(req.id), **details},
    )


async def _load_request(db: AsyncSession, request_id: uuid.UUID) -> BloodRequest:
    result = await db.execute(
        select(BloodRequest)
        .where(BloodRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    req = result.scalar_one_or_none()
    if req is None:
        raise NotFoundError("Request", request_id)
    return req


async def _load_user(db: AsyncSession, user_id: Any, entity: str = "User") -> User:
    user_id = _as_uuid(user_id, "user_id")
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(entity, user_id)
    return user


async def _guarded_update(
    db: AsyncSession,
    req: BloodRequest,
    expected: frozenset[RequestStatus] | set[RequestStatus],
    operation: str,
    *conditions,
    **values: Any,
) -> None:
    """Apply *values* only if the row is still in one of the *expected* statuses."""
    result = await db.execute(
        update(BloodRequest)
        .where(BloodRequest.id == req.id, BloodRequest.status.in_(list(expected)), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = await db.scalar(select(BloodRequest.status).where(BloodRequest.id == req.id))
        if current is None:
            raise NotFoundError("Request", req.id)
        logger.info("Lost %s race on request %s (now %s)", operation, req.id, current)
        raise _state_error(current, operation)
    await db.refresh(req)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_request(
    db: AsyncSession,
    *,
    requester_id: uuid.UUID | str,
    blood_group: str | BloodGroup | None,
    units: int | None,
    longitude: float | None,
    latitude: float | None,
    address: str | None,
    need_by_date: datetime | None,
    patient_name: str | None,
    purpose: str | None,
    diseases: list[str] | None = None,
    urgency: str | Urgency = Urgency.MEDIUM,
    patient_age: int | None = None,
    patient_gender: str | Gender | None = None,
    additional_notes: str | None = None,
    contact_name: str | None = None,
    contact_phone: str | None = None,
    contact_relationship: str | None = None,
    is_public: bool = True,
    radius_km: float | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Open a new pending request and alert compatible donors nearby.

    Returns the serialized request plus ``potential_donors`` (how many
    donors matched).  Their alerts are queued on *db* and go out once the
    caller commits.  Having no matching donors is not an error.
    """
    required = {
        "blood_group": blood_group,
        "units": units,
        "location": None if longitude is None or latitude is None else (longitude, latitude),
        "address": address.strip() if isinstance(address, str) else address,
        "need_by_date": need_by_date,
        "patient_name": patient_name.strip() if isinstance(patient_name, str) else patient_name,
        "purpose": purpose.strip() if isinstance(purpose, str) else purpose,
    }
    missing = [name for name, value in required.items() if value in (None, "")]
    if missing:
        raise ValidationError(f"Please provide all required fields: {', '.join(missing)}", field=missing[0])

    group = parse_blood_group(blood_group)
    if isinstance(units, bool) or not isinstance(units, int) or not 1 <= units <= 10:
        raise ValidationError("Units must be a whole number between 1 and 10", field="units")
    lon, lat = validate_coordinates(longitude, latitude)
    if not isinstance(need_by_date, datetime):
        raise ValidationError("need_by_date must be a datetime", field="need_by_date")
    if patient_age is not None and patient_age < 0:
        raise ValidationError("patient_age cannot be negative", field="patient_age")
    try:
        urgency = Urgency(urgency)
        patient_gender = Gender(patient_gender) if patient_gender is not None else None
    except ValueError as exc:
        raise ValidationError(str(exc))

    requester = await _load_user(db, requester_id, "Requester")
    authorize("create", requester.role)
    if not requester.is_active:
        raise AuthorizationError("Inactive account")

    now = now or datetime.utcnow()
    req = BloodRequest(
        id=uuid.uuid4(),
        requester_id=requester.id,
        blood_group=group,
        units=units,
        diseases=list(diseases or []),
        urgency=urgency,
        patient_name=required["patient_name"],
        patient_age=patient_age,
        patient_gender=patient_gender,
        purpose=required["purpose"],
        additional_notes=additional_notes,
        latitude=lat,
        longitude=lon,
        address=required["address"],
        need_by_date=_utc_naive(need_by_date),
        contact_name=contact_name,
        contact_phone=contact_phone,
        contact_relationship=contact_relationship,
        is_public=is_public,
        status=S.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(req)
    await db.flush()
    await db.refresh(req)

    candidates = await find_candidates(
        db,
        origin=(lon, lat),
        blood_group=group,
        radius_km=radius_km,
        exclude_ids=[requester.id],
        eligible_only=True,
        now=now,
    )
    payload = _request_to_dict(req, now)

    deliveries = [
        (
            donor.id,
            _payload(
                req,
                "Blood needed nearby",
                f"A patient needs {units} unit(s) of {group.value} blood {distance:.1f} km from you.",
                NotificationType.REQUEST,
                distance_km=round(distance, 1),
                urgency=urgency.value,
            ),
        )
        for donor, distance in candidates
    ]
    queued = defer(db, dispatcher or get_dispatcher(), deliveries)

    logger.info(
        "Created request %s (%s x%d) from %s: %d potential donor(s), %d alert(s) queued",
        req.id, group.value, units, requester.id, len(candidates), queued,
    )
    payload["potential_donors"] = len(candidates)
    return payload


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def accept_request(
    db: AsyncSession,
    request_id: uuid.UUID | str,
    donor_id: uuid.UUID | str,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """A donor takes a pending request: pending -> matched."""
    request_id = _as_uuid(request_id, "request_id")
    now = now or datetime.utcnow()

    async with _request_lock(request_id):
        req = await _load_request(db, request_id)
        donor = await _load_user(db, donor_id, "Donor")
        authorize("accept", donor.role)

        if req.status != S.PENDING:
            raise _state_error(req.status, "accept")
        if req.requester_id == donor.id:
            raise AuthorizationError("You cannot accept your own request")

        reason = ineligibility_reason(donor, now)
        if reason is not None:
            next_date = next_eligible_date(donor)
            raise EligibilityError(reason, next_date if next_date and next_date > now else None)
        if donor.blood_group is None or not can_donate(donor.blood_group, req.blood_group):
            raise IncompatibilityError(donor.blood_group, req.blood_group)

        _ensure_transition(req.status, S.MATCHED, "accept")
        await _guarded_update(
            db, req, {S.PENDING}, "accept",
            status=S.MATCHED,
            assigned_donor_id=donor.id,
            matched_at=now,
            updated_at=now,
        )
        data = _request_to_dict(req, now)

    logger.info("Request %s status -> matched (donor %s)", req.id, donor.id)
    defer(db, dispatcher or get_dispatcher(), [(
        req.requester_id,
        _payload(
            req,
            "A donor has accepted your request!",
            f"{donor.name} has accepted your blood request for {req.blood_group.value}. "
            "Please coordinate for donation.",
            NotificationType.MATCH,
            donor_id=str(donor.id),
        ),
    )])
    return data


async def fulfill_request(
    db: AsyncSession,
    request_id: uuid.UUID | str,
    doctor_id: uuid.UUID | str,
    verification: DonationVerification | dict[str, Any],
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """A doctor closes a matched request.

    ``verified``: matched -> fulfilled, the donor's ``donation_count`` and
    ``last_donation_date`` are updated and a verified ``Donation`` is stored.
    ``rejected``: matched -> expired, donor statistics are left alone and a
    rejected ``Donation`` is stored.  Both parties are notified either way.
    """
    if isinstance(verification, dict):
        try:
            verification = DonationVerification(**verification)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid verification: {exc.errors()[0]['msg']}")
    request_id = _as_uuid(request_id, "request_id")
    now = now or datetime.utcnow()
    donation_date = _utc_naive(verification.donation_date)
    if donation_date > now:
        raise ValidationError("Donation date cannot be in the future", field="donation_date")
    verified = verification.status == DonationStatus.VERIFIED

    async with _request_lock(request_id):
        req = await _load_request(db, request_id)
        doctor = await _load_user(db, doctor_id, "Doctor")
        authorize("fulfill", doctor.role)
        if doctor.id in (req.requester_id, req.assigned_donor_id):
            raise AuthorizationError("A doctor cannot verify a donation they are party to")
        if req.status != S.MATCHED:
            raise _state_error(req.status, "fulfill")

        donor = await _load_user(db, req.assigned_donor_id, "Donor")
        requester_id = req.requester_id

        donation = Donation(
            id=uuid.uuid4(),
            donor_id=donor.id,
            requester_id=requester_id,
            request_id=req.id,
            blood_group=req.blood_group,
            units=verification.units or req.units,
            donation_date=donation_date,
            latitude=req.latitude,
            longitude=req.longitude,
            hospital_name=verification.hospital_name,
            hospital_address=verification.hospital_address,
            verified_by_id=doctor.id,
            verification_date=now,
            status=verification.status,
            notes=verification.notes,
        )
        db.add(donation)

        if verified:
            _ensure_transition(req.status, S.FULFILLED, "fulfill")
            await _guarded_update(
                db, req, {S.MATCHED}, "fulfill",
                status=S.FULFILLED,
                verified_by_id=doctor.id,
                verified_at=now,
                fulfilled_at=now,
                hospital_name=verification.hospital_name,
                hospital_address=verification.hospital_address,
                hospital_phone=verification.hospital_phone,
                verification_notes=verification.notes,
                updated_at=now,
            )
            await db.execute(
                update(User)
                .where(User.id == donor.id)
                .values(
                    donation_count=func.coalesce(User.donation_count, 0) + 1,
                    last_donation_date=donation_date,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        else:
            _ensure_transition(req.status, S.EXPIRED, "fulfill")
            await _guarded_update(
                db, req, {S.MATCHED}, "fulfill",
                status=S.EXPIRED,
                assigned_donor_id=None,
                verification_notes=verification.notes,
                updated_at=now,
            )

        await db.execute(
            update(User)
            .where(User.id == doctor.id)
            .values(verification_count=func.coalesce(User.verification_count, 0) + 1)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        await db.refresh(donation)
        data = _request_to_dict(req, now)
        data["donation"] = donation_to_dict(donation)

    logger.info(
        "Request %s status -> %s (doctor %s, donation %s)",
        req.id, req.status.value, doctor.id, verification.status.value,
    )

    if verified:
        deliveries = [
            (donor.id, _payload(
                req, "Donation Verified",
                f"Your blood donation has been verified by Dr. {doctor.name}. Thank you for saving lives!",
                NotificationType.VERIFICATION,
            )),
            (requester_id, _payload(
                req, "Donation Completed",
                "The blood donation for your request has been verified by a doctor.",
                NotificationType.DONATION,
            )),
        ]
    else:
        reason = verification.notes or "No reason provided"
        deliveries = [
            (donor.id, _payload(
                req, "Donation Not Verified",
                f"Your donation for a recent request could not be verified: {reason}",
                NotificationType.VERIFICATION,
                reason=reason,
            )),
            (requester_id, _payload(
                req, "Donation Not Verified",
                f"The donation for your request could not be verified: {reason}",
                NotificationType.DONATION,
                reason=reason,
            )),
        ]
    defer(db, dispatcher or get_dispatcher(), deliveries)
    return data


async def cancel_request(
    db: AsyncSession,
    request_id: uuid.UUID | str,
    actor_id: uuid.UUID | str,
    actor_role: UserRole | str,
    *,
    reason: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Owner or admin withdraws a pending or matched request."""
    role = authorize("cancel", actor_role)
    request_id = _as_uuid(request_id, "request_id")
    actor_id = _as_uuid(actor_id, "actor_id")
    now = now or datetime.utcnow()

    async with _request_lock(request_id):
        req = await _load_request(db, request_id)
        if role != UserRole.ADMIN and req.requester_id != actor_id:
            raise AuthorizationError("Not authorized to cancel this request")
        if req.status in TERMINAL_STATUSES:
            raise _state_error(req.status, "cancel")

        former_donor_id = req.assigned_donor_id
        _ensure_transition(req.status, S.CANCELLED, "cancel")
        await _guarded_update(
            db, req, {S.PENDING, S.MATCHED}, "cancel",
            status=S.CANCELLED,
            assigned_donor_id=None,
            updated_at=now,
        )
        data = _request_to_dict(req, now)

    logger.info("Request %s status -> cancelled (by %s %s)", req.id, role.value, actor_id)

    deliveries = []
    if former_donor_id is not None:
        deliveries.append((former_donor_id, _payload(
            req, "Request Cancelled",
            "The blood request you accepted has been cancelled by the requester or admin.",
            NotificationType.CANCELLATION,
            reason=reason,
        )))
    if actor_id != req.requester_id:
        deliveries.append((req.requester_id, _payload(
            req, "Request Cancelled",
            f"Your blood request has been cancelled by an administrator{': ' + reason if reason else '.'}",
            NotificationType.CANCELLATION,
            reason=reason,
        )))
    defer(db, dispatcher or get_dispatcher(), deliveries)
    return data


async def expire_request(
    db: AsyncSession,
    request_id: uuid.UUID | str,
    *,
    actor_role: UserRole | str | None = None,
    reason: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Pending/matched -> expired.  Expiring an expired request is a no-op.

    ``actor_role`` is ``None`` for the background sweep; otherwise it must be
    an admin.
    """
    if actor_role is not None:
        authorize("expire", actor_role)
    request_id = _as_uuid(request_id, "request_id")
    now = now or datetime.utcnow()

    async with _request_lock(request_id):
        req = await _load_request(db, request_id)
        if req.status == S.EXPIRED:
            return _request_to_dict(req, now)
        _ensure_transition(req.status, S.EXPIRED, "expire")

        former_donor_id = req.assigned_donor_id
        await _guarded_update(
            db, req, {S.PENDING, S.MATCHED}, "expire",
            status=S.EXPIRED,
            assigned_donor_id=None,
            updated_at=now,
        )
        data = _request_to_dict(req, now)

    logger.info("Request %s status -> expired", req.id)

    message = reason or "The need-by date for this blood request has passed."
    deliveries = [(req.requester_id, _payload(
        req, "Request Expired", f"Your blood request has expired. {message}", NotificationType.EXPIRY,
    ))]
    if former_donor_id is not None:
        deliveries.append((former_donor_id, _payload(
            req, "Request Expired", f"A blood request you accepted has expired. {message}",
            NotificationType.EXPIRY,
        )))
    defer(db, dispatcher or get_dispatcher(), deliveries)
    return data


async def expire_overdue_requests(
    db: AsyncSession,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> int:
    """Expire every open request whose need-by date has passed."""
    now = now or datetime.utcnow()
    result = await db.execute(
        select(BloodRequest.id).where(
            BloodRequest.status.in_([S.PENDING, S.MATCHED]),
            BloodRequest.need_by_date < now,
        )
    )
    expired = 0
    for request_id in result.scalars().all():
        try:
            await expire_request(db, request_id, dispatcher=dispatcher, now=now)
            expired += 1
        except InvalidStateError as exc:
            # Fulfilled or cancelled between the scan and the write
            logger.debug("Skipped expiring %s: %s", request_id, exc.message)
    if expired:
        logger.info("Expired %d overdue request(s)", expired)
    return expired


# ---------------------------------------------------------------------------
# Rating
# ---------------------------------------------------------------------------

async def rate_request(
    db: AsyncSession,
    request_id: uuid.UUID | str,
    requester_id: uuid.UUID | str,
    rating: int,
    feedback: str | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """The owner rates the donor of a fulfilled request, once.

    The donor's ``rating_average`` (one decimal) and ``rating_count`` are
    recomputed over every rated request they fulfilled.
    """
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be a whole number from 1 to 5", field="rating")
    request_id = _as_uuid(request_id, "request_id")
    now = now or datetime.utcnow()

    async with _request_lock(request_id):
        req = await _load_request(db, request_id)
        actor = await _load_user(db, requester_id, "Requester")
        authorize("rate", actor.role)
        if req.requester_id != actor.id:
            raise AuthorizationError("Only the requester can rate this donation")
        if req.status != S.FULFILLED:
            raise _state_error(req.status, "rate")
        if req.assigned_donor_id is None:
            raise InvalidStateError("Request has no assigned donor to rate", req.status)
        if req.donor_rating is not None:
            raise InvalidStateError("Request has already been rated", req.status)

        donor_id = req.assigned_donor_id
        await _guarded_update(
            db, req, {S.FULFILLED}, "rate",
            BloodRequest.donor_rating.is_(None),
            donor_rating=rating,
            donor_feedback=feedback,
            rated_at=now,
            updated_at=now,
        )

        row = (await db.execute(
            select(func.avg(BloodRequest.donor_rating), func.count(BloodRequest.donor_rating))
            .where(BloodRequest.assigned_donor_id == donor_id, BloodRequest.donor_rating.isnot(None))
        )).one()
        average = _round_rating(float(row[0]))
        count = int(row[1])
        await db.execute(
            update(User)
            .where(User.id == donor_id)
            .values(rating_average=average, rating_count=count)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        data = _request_to_dict(req, now)

    logger.info("Request %s rated %d; donor %s now %.1f over %d", req.id, rating, donor_id, average, count)
    data["donor_rating_summary"] = {"donor_id": str(donor_id), "average": average, "count": count}
    return data


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_request(
    db: AsyncSession,
    request_id: uuid.UUID | str,
    actor_id: uuid.UUID | str,
    actor_role: UserRole | str,
) -> dict[str, Any]:
    """Read one request; private requests are limited to the parties involved."""
    req = await _load_request(db, _as_uuid(request_id, "request_id"))
    role = as_role(actor_role)
    actor_id = _as_uuid(actor_id, "actor_id")
    if not req.is_public and role not in _PRIVATE_READERS and actor_id not in (
        req.requester_id, req.assigned_donor_id,
    ):
        raise AuthorizationError("This request is private")
    return _request_to_dict(req)


async def list_potential_donors(
    db: AsyncSession,
    request_id: uuid.UUID | str,
    actor_id: uuid.UUID | str,
    actor_role: UserRole | str,
    *,
    radius_km: float | None = None,
) -> list[dict[str, Any]]:
    """Eligible compatible donors near a pending request, nearest first."""
    role = authorize("list_potential_donors", actor_role)
    req = await _load_request(db, _as_uuid(request_id, "request_id"))
    if role == UserRole.REQUESTER and req.requester_id != _as_uuid(actor_id, "actor_id"):
        raise AuthorizationError("Not authorized to view donors for this request")
    if req.status != S.PENDING:
        raise _state_error(req.status, "search donors")

    candidates = await find_candidates(
        db,
        origin=(req.longitude, req.latitude),
        blood_group=req.blood_group,
        radius_km=radius_km,
        exclude_ids=[req.requester_id],
        eligible_only=True,
    )
    return [candidate_to_dict(user, distance) for user, distance in candidates]


async def list_nearby_requests(
    db: AsyncSession,
    donor_id: uuid.UUID | str,
    *,
    radius_km: float | None = None,
) -> list[dict[str, Any]]:
    """Pending public requests the donor could supply, nearest first."""
    donor = await _load_user(db, donor_id, "Donor")
    authorize("nearby_requests", donor.role)
    nearby = await find_nearby_requests(db, donor, radius_km=radius_km)
    items = []
    for req, distance in nearby:
        data = _request_to_dict(req)
        data["distance_km"] = round(distance, 1)
        items.append(data)
    return items


def _party(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {
        "id": str(user.id),
        "name": user.name,
        "phone": user.phone,
        "blood_group": user.blood_group.value if user.blood_group else None,
    }


async def list_active_requests(db: AsyncSession, donor_id: uuid.UUID | str) -> list[dict[str, Any]]:
    """Matched requests the donor has accepted, most recently matched first."""
    donor = await _load_user(db, donor_id, "Donor")
    authorize("active_requests", donor.role)
    result = await db.execute(
        select(BloodRequest, User)
        .join(User, User.id == BloodRequest.requester_id)
        .where(BloodRequest.assigned_donor_id == donor.id, BloodRequest.status == S.MATCHED)
        .order_by(BloodRequest.matched_at.desc())
    )
    items = []
    for req, requester in result.all():
        data = _request_to_dict(req)
        data["requester"] = _party(requester)
        items.append(data)
    return items


async def list_pending_verifications(db: AsyncSession, doctor_id: uuid.UUID | str) -> list[dict[str, Any]]:
    """Matched requests waiting for a doctor, oldest match first.

    Requests the doctor is party to (as requester or donor) are left out,
    since ``fulfill_request`` would refuse them anyway.
    """
    doctor = await _load_user(db, doctor_id, "Doctor")
    authorize("pending_verifications", doctor.role)
    result = await db.execute(
        select(BloodRequest)
        .where(
            BloodRequest.status == S.MATCHED,
            BloodRequest.requester_id != doctor.id,
            BloodRequest.assigned_donor_id != doctor.id,
        )
        .order_by(BloodRequest.matched_at.asc())
    )
    requests = result.scalars().all()

    user_ids = {r.requester_id for r in requests} | {r.assigned_donor_id for r in requests}
    users: dict[uuid.UUID, User] = {}
    if user_ids:
        rows = await db.execute(select(User).where(User.id.in_(list(user_ids))))
        users = {u.id: u for u in rows.scalars().all()}

    items = []
    for req in requests:
        data = _request_to_dict(req)
        data["requester"] = _party(users.get(req.requester_id))
        data["assigned_donor"] = _party(users.get(req.assigned_donor_id))
        items.append(data)
    return items
