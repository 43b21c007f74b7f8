"""Which roles may invoke which operation.

The same table backs the HTTP role dependency and the service-level checks,
so a route and the service it calls can never disagree.  Ownership (is this
*your* request?) is checked by the services themselves.
"""

from bloodlink.errors import AuthorizationError
from bloodlink.models.user import UserRole

OPERATION_ROLES: dict[str, frozenset[UserRole]] = {
    # request lifecycle
    "create": frozenset({UserRole.REQUESTER}),
    "accept": frozenset({UserRole.DONOR}),
    "fulfill": frozenset({UserRole.DOCTOR}),
    "cancel": frozenset({UserRole.REQUESTER, UserRole.ADMIN}),
    "rate": frozenset({UserRole.REQUESTER}),
    "expire": frozenset({UserRole.ADMIN}),
    "list_potential_donors": frozenset({UserRole.REQUESTER, UserRole.DOCTOR, UserRole.ADMIN}),
    # donor self-service
    "check_eligibility": frozenset({UserRole.DONOR}),
    "nearby_requests": frozenset({UserRole.DONOR}),
    "toggle_availability": frozenset({UserRole.DONOR}),
    "active_requests": frozenset({UserRole.DONOR}),
    "donation_history": frozenset({UserRole.DONOR}),
    "donor_stats": frozenset({UserRole.DONOR}),
    # doctors
    "pending_verifications": frozenset({UserRole.DOCTOR}),
    "doctor_stats": frozenset({UserRole.DOCTOR}),
}


def as_role(value: UserRole | str) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        raise AuthorizationError(f"Unknown role {value!r}")


def authorize(operation: str, role: UserRole | str) -> UserRole:
    """Return the parsed role, or raise ``AuthorizationError`` if it may not *operation*."""
    role = as_role(role)
    allowed = OPERATION_ROLES[operation]
    if role not in allowed:
        required = sorted(r.value for r in allowed)
        raise AuthorizationError(f"Role {role.value} not authorized to {operation}. Required: {required}")
    return role
