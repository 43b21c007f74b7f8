"""
Blood group compatibility: which donor groups may give to which recipients.

``DONOR_TO_RECIPIENT`` is the single canonical ABO/Rh table.  The
recipient-side view (``RECIPIENT_FROM_DONOR``) is computed from it at import
time so the two directions can never disagree.
"""

from __future__ import annotations

from bloodlink.errors import ValidationError
from bloodlink.models.user import BloodGroup

G = BloodGroup

DONOR_TO_RECIPIENT: dict[BloodGroup, frozenset[BloodGroup]] = {
    G.O_NEG: frozenset(BloodGroup),  # Universal donor
    G.O_POS: frozenset({G.O_POS, G.A_POS, G.B_POS, G.AB_POS}),
    G.A_NEG: frozenset({G.A_NEG, G.A_POS, G.AB_NEG, G.AB_POS}),
    G.A_POS: frozenset({G.A_POS, G.AB_POS}),
    G.B_NEG: frozenset({G.B_NEG, G.B_POS, G.AB_NEG, G.AB_POS}),
    G.B_POS: frozenset({G.B_POS, G.AB_POS}),
    G.AB_NEG: frozenset({G.AB_NEG, G.AB_POS}),
    G.AB_POS: frozenset({G.AB_POS}),
}


def _invert(table: dict[BloodGroup, frozenset[BloodGroup]]) -> dict[BloodGroup, frozenset[BloodGroup]]:
    inverse: dict[BloodGroup, set[BloodGroup]] = {group: set() for group in BloodGroup}
    for donor, recipients in table.items():
        for recipient in recipients:
            inverse[recipient].add(donor)
    return {group: frozenset(donors) for group, donors in inverse.items()}


RECIPIENT_FROM_DONOR: dict[BloodGroup, frozenset[BloodGroup]] = _invert(DONOR_TO_RECIPIENT)


def parse_blood_group(value: str | BloodGroup | None) -> BloodGroup:
    """Coerce user input such as ``"ab-"`` or ``" O+ "`` into a ``BloodGroup``."""
    if isinstance(value, BloodGroup):
        return value
    if value is None:
        raise ValidationError("Blood group is required", field="blood_group")
    try:
        return BloodGroup(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown blood group: {value!r}", field="blood_group")


def can_donate(donor_group: str | BloodGroup, recipient_group: str | BloodGroup) -> bool:
    """True when blood from *donor_group* may be given to *recipient_group*."""
    return parse_blood_group(recipient_group) in DONOR_TO_RECIPIENT[parse_blood_group(donor_group)]


def compatible_recipients(donor_group: str | BloodGroup) -> frozenset[BloodGroup]:
    return DONOR_TO_RECIPIENT[parse_blood_group(donor_group)]


def compatible_donors(recipient_group: str | BloodGroup) -> frozenset[BloodGroup]:
    """Donor groups a recipient of *recipient_group* may receive from."""
    return RECIPIENT_FROM_DONOR[parse_blood_group(recipient_group)]
