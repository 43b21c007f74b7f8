"""
Donor eligibility: may this donor give blood right now?

A donor must be an active, available donor account, and at least
``DONATION_COOLDOWN_DAYS`` must have passed since the last recorded donation.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from bloodlink.config import get_settings
from bloodlink.models.user import User, UserRole


def cooldown() -> timedelta:
    return timedelta(days=get_settings().DONATION_COOLDOWN_DAYS)


def next_eligible_date(donor: User) -> datetime | None:
    """Date the cooldown ends, or ``None`` if the donor has never donated."""
    if donor.last_donation_date is None:
        return None
    return donor.last_donation_date + cooldown()


def ineligibility_reason(donor: User, now: datetime | None = None) -> str | None:
    """Return why *donor* cannot donate, or ``None`` when eligible."""
    if donor.role != UserRole.DONOR:
        return "Only donor accounts can donate"
    if not donor.is_active:
        return "Donor account is inactive"
    if not donor.is_available:
        return "Donor is not marked as available"
    if donor.last_donation_date is not None:
        now = now or datetime.utcnow()
        if donor.last_donation_date > now - cooldown():
            return (
                f"Last donation was on {donor.last_donation_date.date().isoformat()}; "
                f"donors must wait {cooldown().days} days between donations"
            )
    return None


def is_eligible(donor: User, now: datetime | None = None) -> bool:
    return ineligibility_reason(donor, now) is None


def check_eligibility(donor: User, now: datetime | None = None) -> dict[str, Any]:
    reason = ineligibility_reason(donor, now)
    next_date = next_eligible_date(donor) if reason is not None else None
    return {
        "is_eligible": reason is None,
        "reason": reason,
        "next_eligible_date": next_date.isoformat() if next_date else None,
        "last_donation_date": donor.last_donation_date.isoformat() if donor.last_donation_date else None,
    }
