"""
Identity - Role Precedence

Single source of truth for the four membership roles and their ordering:

    SYSTEM_ADMIN > DISTRICT_ADMIN > LODGE_ADMIN > MEMBER

Every comparison of roles in the codebase goes through the helpers here.
Legacy vocabulary (SUPER_ADMIN, LODGE_MEMBER, ...) is accepted on input and
normalised to the canonical values.
"""

import logging
from enum import Enum
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Membership roles, highest first."""
    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    DISTRICT_ADMIN = "DISTRICT_ADMIN"
    LODGE_ADMIN = "LODGE_ADMIN"
    MEMBER = "MEMBER"


ROLE_PRECEDENCE: Dict[Role, int] = {
    Role.SYSTEM_ADMIN: 4,
    Role.DISTRICT_ADMIN: 3,
    Role.LODGE_ADMIN: 2,
    Role.MEMBER: 1,
}

# Admin tiers that are bound to a lodge or district scope
SCOPED_ADMIN_ROLES = (Role.DISTRICT_ADMIN, Role.LODGE_ADMIN)

LEGACY_ROLE_ALIASES: Dict[str, Role] = {
    "SUPER_ADMIN": Role.SYSTEM_ADMIN,
    "SUPERADMIN": Role.SYSTEM_ADMIN,
    "SYSTEM_ADMIN": Role.SYSTEM_ADMIN,
    "DISTRICT_ADMIN": Role.DISTRICT_ADMIN,
    "LODGE_ADMIN": Role.LODGE_ADMIN,
    "LODGE_MEMBER": Role.MEMBER,
    "MEMBER": Role.MEMBER,
}


def parse_role(value: Union[str, Role, None]) -> Role:
    """
    Parse a role from canonical or legacy free text.

    Case, surrounding whitespace, spaces and hyphens are normalised, so
    "lodge admin", "Lodge-Admin" and "LODGE_ADMIN" are the same role.

    Raises:
        ValueError: if the value does not name a known role
    """
    if isinstance(value, Role):
        return value
    if value is None:
        raise ValueError("Role is required")

    key = str(value).strip().upper().replace("-", "_").replace(" ", "_")
    role = LEGACY_ROLE_ALIASES.get(key)
    if role is None:
        raise ValueError(f"Unknown role: {value!r}")
    return role


def coerce_role(value: Union[str, Role, None], default: Role = Role.MEMBER) -> Role:
    """Parse a role, falling back to ``default`` (with a warning) for unknown text."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return parse_role(value)
    except ValueError:
        logger.warning(f"Unrecognised role {value!r}, treating as {default.value}")
        return default


def role_rank(role: Union[str, Role]) -> int:
    return ROLE_PRECEDENCE[parse_role(role)]


def compare_roles(a: Union[str, Role], b: Union[str, Role]) -> int:
    """Return -1, 0 or 1 as ``a`` ranks below, equal to or above ``b``."""
    diff = role_rank(a) - role_rank(b)
    return (diff > 0) - (diff < 0)


def outranks(a: Union[str, Role], b: Union[str, Role]) -> bool:
    """True when ``a`` is strictly higher than ``b``."""
    return compare_roles(a, b) > 0


def outranks_or_equals(a: Union[str, Role], b: Union[str, Role]) -> bool:
    return compare_roles(a, b) >= 0


def max_role(*roles: Optional[Union[str, Role]]) -> Role:
    """Highest of the given roles; ``None`` entries are ignored."""
    parsed = [parse_role(r) for r in roles if r is not None]
    if not parsed:
        return Role.MEMBER
    return max(parsed, key=lambda r: ROLE_PRECEDENCE[r])


def is_admin(role: Union[str, Role]) -> bool:
    return outranks(role, Role.MEMBER)
