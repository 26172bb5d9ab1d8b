"""
Password hashing.

bcrypt through passlib; the cost factor comes from ``BCRYPT_ROUNDS``.
"""

import logging

from passlib.context import CryptContext

from config import get_settings

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=get_settings().BCRYPT_ROUNDS,
)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash; a malformed hash never verifies."""
    if not plain_password or not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError) as e:
        logger.warning(f"Password hash could not be checked: {e}")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)


def is_password_hash(value: str) -> bool:
    """True when ``value`` is already a recognised hash rather than plaintext."""
    if not value:
        return False
    return pwd_context.identify(value, required=False) is not None
