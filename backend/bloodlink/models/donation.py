import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Enum, DateTime, Integer, Float, ForeignKey, Text, Uuid

from bloodlink.db.session import Base
from bloodlink.models.user import BloodGroup


class DonationStatus(str, enum.Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"


class Donation(Base):
    """Immutable audit record written when a doctor verifies or rejects a donation."""

    __tablename__ = "donations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    donor_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    requester_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    request_id = Column(Uuid, ForeignKey("blood_requests.id"), nullable=False, index=True)
    blood_group = Column(Enum(BloodGroup), nullable=False)
    units = Column(Integer, nullable=False)
    donation_date = Column(DateTime, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    hospital_name = Column(String, nullable=False)
    hospital_address = Column(String, nullable=True)
    verified_by_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    verification_date = Column(DateTime, default=datetime.utcnow)
    status = Column(Enum(DonationStatus), nullable=False, default=DonationStatus.VERIFIED)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
