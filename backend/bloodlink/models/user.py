import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Enum, DateTime, Boolean, Integer, Float, Uuid

from bloodlink.db.session import Base


class UserRole(str, enum.Enum):
    DONOR = "donor"
    REQUESTER = "requester"
    DOCTOR = "doctor"
    NGO = "ngo"
    ADMIN = "admin"


class BloodGroup(str, enum.Enum):
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=True)
    phone = Column(String, nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.DONOR)
    blood_group = Column(Enum(BloodGroup), nullable=True)
    address = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Donor fields
    is_available = Column(Boolean, default=False)
    last_donation_date = Column(DateTime, nullable=True)
    donation_count = Column(Integer, default=0)
    rating_average = Column(Float, nullable=True)
    rating_count = Column(Integer, default=0)

    # Doctor fields
    hospital_name = Column(String, nullable=True)
    verification_count = Column(Integer, default=0)

    # Notification preferences
    notify_by_email = Column(Boolean, default=True)
    notify_by_push = Column(Boolean, default=True)
    search_radius_km = Column(Float, nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def coordinates(self):
        """``(longitude, latitude)`` or ``None`` when no location is stored."""
        if self.latitude is None or self.longitude is None:
            return None
        return (self.longitude, self.latitude)
