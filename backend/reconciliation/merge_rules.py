"""
Identity Merge Rules

How a legacy member profile is folded into a draft canonical identity.

Rules:
- Contact and personal fields: a non-empty profile value overrides
- Name: recomputed from first/last whenever either changes
- primaryLodge: the profile's value wins when it has one
- Lodges: union of both records' primary lodge, lodges and membership refs,
  first occurrence order, no duplicates
- Memberships: union by lodge, the profile's entry wins for a shared lodge
- Role: the higher of the two
- Credentials: the account hash is authoritative; a profile password is used
  only when the draft has none
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from identity.models import (
    Identity,
    LegacyMemberProfileRecord,
    LodgeMembership,
    as_aware,
    join_name,
    merge_lodge_refs,
)
from identity.roles import Role, coerce_role, max_role
from services.passwords import get_password_hash, is_password_hash, verify_password

logger = logging.getLogger(__name__)

PROFILE_OVERRIDE_FIELDS = (
    "first_name",
    "last_name",
    "phone",
    "address",
    "city",
    "state",
    "zip_code",
    "country",
    "occupation",
    "bio",
    "profile_image",
    "primary_lodge_position",
)


@dataclass
class MergeOutcome:
    """What merging one profile changed on the draft."""
    overridden_fields: List[str] = field(default_factory=list)
    lodges_added: List[str] = field(default_factory=list)
    role_before: Role = Role.MEMBER
    role_after: Role = Role.MEMBER
    credential_from_profile: bool = False

    @property
    def role_upgraded(self) -> bool:
        return self.role_after != self.role_before


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def resolve_profile_credential(
    password: Optional[str],
    previous_hash: Optional[str] = None,
    hasher: Callable[[str], str] = get_password_hash,
) -> Optional[str]:
    """
    Credential hash for a legacy profile password.

    Already-hashed values are kept. Plaintext is hashed, except that a previous
    canonical hash that still verifies the plaintext is reused so repeated runs
    produce the same document.
    """
    if not password:
        return None
    if is_password_hash(password):
        return password
    if previous_hash and verify_password(password, previous_hash):
        return previous_hash
    return hasher(password)


def _earliest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [as_aware(v) for v in values if v is not None]
    return min(present) if present else None


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [as_aware(v) for v in values if v is not None]
    return max(present) if present else None


def merge_memberships(
    existing: List[LodgeMembership], incoming: List[LodgeMembership]
) -> List[LodgeMembership]:
    by_lodge: Dict[str, LodgeMembership] = {m.lodge: m for m in existing}
    for membership in incoming:
        by_lodge[membership.lodge] = membership
    return list(by_lodge.values())


def draft_from_profile(
    profile: LegacyMemberProfileRecord,
    previous_hash: Optional[str] = None,
    fallback: Optional[datetime] = None,
) -> Identity:
    """New draft for an email only the profile store knows."""
    return profile.to_identity(
        password_hash=resolve_profile_credential(profile.password, previous_hash),
        fallback=fallback,
    )


def merge_profile(
    draft: Identity,
    profile: LegacyMemberProfileRecord,
    previous_hash: Optional[str] = None,
) -> MergeOutcome:
    """Fold ``profile`` into ``draft`` in place."""
    outcome = MergeOutcome(role_before=draft.role)

    for name in PROFILE_OVERRIDE_FIELDS:
        value = getattr(profile, name)
        if has_value(value) and value != getattr(draft, name):
            setattr(draft, name, value)
            outcome.overridden_fields.append(name)

    if profile.interests:
        draft.interests = list(profile.interests)
        outcome.overridden_fields.append("interests")

    if "first_name" in outcome.overridden_fields or "last_name" in outcome.overridden_fields:
        draft.name = join_name(draft.first_name, draft.last_name)

    lodges_before = list(draft.lodges)
    draft.lodges = merge_lodge_refs(
        draft.primary_lodge,
        draft.lodges,
        profile.primary_lodge,
        profile.lodges,
        profile.membership_lodges(),
    )
    outcome.lodges_added = [ref for ref in draft.lodges if ref not in lodges_before]
    if profile.primary_lodge:
        draft.primary_lodge = profile.primary_lodge

    draft.lodge_memberships = merge_memberships(draft.lodge_memberships, profile.lodge_memberships)

    draft.role = max_role(draft.role, coerce_role(profile.role))
    outcome.role_after = draft.role

    if not draft.password_hash and profile.password:
        draft.password_hash = resolve_profile_credential(profile.password, previous_hash)
        outcome.credential_from_profile = True

    profile_created = profile.created_at or profile.member_since
    draft.member_since = _earliest(draft.member_since, profile.member_since, profile_created)
    draft.created = _earliest(draft.created, profile_created)
    draft.updated_at = _latest(draft.updated_at, profile.updated_at, profile_created)

    if outcome.role_upgraded:
        logger.info(
            f"{draft.email}: role raised from {outcome.role_before.value} "
            f"to {outcome.role_after.value} by member profile"
        )
    return outcome
