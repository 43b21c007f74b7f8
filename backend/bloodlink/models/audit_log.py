import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Uuid

from bloodlink.db.session import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=True)
    action = Column(String, nullable=False)  # "create", "accept", "fulfill", "cancel", "rate", "expire"
    resource = Column(String, nullable=False)  # "blood_request"
    resource_id = Column(String, nullable=True)
    details = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
