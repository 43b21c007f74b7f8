from bloodlink.models.user import User, UserRole, BloodGroup
from bloodlink.models.blood_request import BloodRequest, RequestStatus, Urgency, Gender
from bloodlink.models.donation import Donation, DonationStatus
from bloodlink.models.notification import Notification, NotificationType
from bloodlink.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "BloodGroup",
    "BloodRequest",
    "RequestStatus",
    "Urgency",
    "Gender",
    "Donation",
    "DonationStatus",
    "Notification",
    "NotificationType",
    "AuditLog",
]
