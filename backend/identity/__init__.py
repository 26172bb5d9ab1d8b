"""
Identity Module

Canonical identity for the membership organisation.

Features:
- One role vocabulary with a total precedence order
- Canonical identity model plus the two legacy record shapes
- Store adapter that reads canonical first, then the legacy stores
- Registration, profile updates and role changes
"""

from .roles import Role, ROLE_PRECEDENCE, parse_role, coerce_role, outranks, outranks_or_equals, max_role
from .models import (
    Identity,
    IdentityStatus,
    LegacyAccountRecord,
    LegacyMemberProfileRecord,
    Lodge,
    LodgeAdminGrant,
    LodgeMembership,
)

__all__ = [
    'Role',
    'ROLE_PRECEDENCE',
    'parse_role',
    'coerce_role',
    'outranks',
    'outranks_or_equals',
    'max_role',
    'Identity',
    'IdentityStatus',
    'LegacyAccountRecord',
    'LegacyMemberProfileRecord',
    'Lodge',
    'LodgeAdminGrant',
    'LodgeMembership',
]
