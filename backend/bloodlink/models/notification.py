import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Enum, DateTime, Boolean, ForeignKey, Text, Uuid

from bloodlink.db.session import Base


class NotificationType(str, enum.Enum):
    REQUEST = "request"
    MATCH = "match"
    DONATION = "donation"
    VERIFICATION = "verification"
    CANCELLATION = "cancellation"
    EXPIRY = "expiry"
    SYSTEM = "system"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(Enum(NotificationType), default=NotificationType.SYSTEM)
    action_url = Column(String, nullable=True)
    # Not a foreign key: the related row may belong to a transaction that has not committed yet
    related_model = Column(String, nullable=True)  # "BloodRequest", "Donation"
    related_id = Column(String, nullable=True)
    is_read = Column(Boolean, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
