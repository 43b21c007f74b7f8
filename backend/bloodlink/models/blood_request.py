"""
Blood request model: a requester's need for blood, tracked from creation
through donor match, doctor verification, cancellation or expiry.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Enum, DateTime, Integer, Float, Boolean, ForeignKey, Text, JSON, Uuid,
    CheckConstraint,
)

from bloodlink.db.session import Base
from bloodlink.models.user import BloodGroup


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({RequestStatus.FULFILLED, RequestStatus.CANCELLED, RequestStatus.EXPIRED})


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Gender(str, enum.Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class BloodRequest(Base):
    __tablename__ = "blood_requests"
    __table_args__ = (
        CheckConstraint("units >= 1 AND units <= 10", name="ck_blood_requests_units"),
        CheckConstraint(
            "donor_rating IS NULL OR (donor_rating >= 1 AND donor_rating <= 5)",
            name="ck_blood_requests_rating",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    requester_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)

    # Clinical
    blood_group = Column(Enum(BloodGroup), nullable=False, index=True)
    units = Column(Integer, nullable=False)
    diseases = Column(JSON, default=list)
    urgency = Column(Enum(Urgency), default=Urgency.MEDIUM)
    patient_name = Column(String, nullable=False)
    patient_age = Column(Integer, nullable=True)
    patient_gender = Column(Enum(Gender), nullable=True)
    purpose = Column(String, nullable=False)
    additional_notes = Column(Text, nullable=True)

    # Geospatial
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String, nullable=False)
    need_by_date = Column(DateTime, nullable=False, index=True)

    contact_name = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    contact_relationship = Column(String, nullable=True)

    is_public = Column(Boolean, default=True)

    # Lifecycle
    status = Column(Enum(RequestStatus), default=RequestStatus.PENDING, nullable=False, index=True)
    assigned_donor_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    matched_at = Column(DateTime, nullable=True)
    verified_by_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)

    # Filled in by the verifying doctor
    hospital_name = Column(String, nullable=True)
    hospital_address = Column(String, nullable=True)
    hospital_phone = Column(String, nullable=True)
    verification_notes = Column(Text, nullable=True)

    # Post-fulfilment feedback
    donor_rating = Column(Integer, nullable=True)
    donor_feedback = Column(Text, nullable=True)
    rated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def time_remaining_seconds(self, now: datetime | None = None) -> float:
        if self.status != RequestStatus.PENDING or self.need_by_date is None:
            return 0
        remaining = (self.need_by_date - (now or datetime.utcnow())).total_seconds()
        return remaining if remaining > 0 else 0

    def is_urgent(self, now: datetime | None = None) -> bool:
        """Pending and due within the next 24 hours."""
        remaining = self.time_remaining_seconds(now)
        return 0 < remaining < 24 * 3600
