"""
Authentication Service for Lodge Identity Core

Implements:
- One JWT token service (HS256, one claims schema, configurable expiry)
- Email/password authentication against the identity store chain
- Token verification with a live lodge-name lookup on every call

Claims:
    userId, email, role (upper-case), name?, lodgeId?, iat, exp
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional, Dict, Any
import logging

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field

from config import get_settings, require_signing_secret
from identity.errors import AuthenticationError, ConfigurationError
from identity.models import Identity, IdentityStatus
from identity.roles import Role, parse_role
from identity.service import IdentityService
from identity.store import IdentityStore
from services.audit import AuditAction, log_auth_action
from services.passwords import verify_password
from services.storage import DocumentStore

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class TokenClaims(BaseModel):
    """Data extracted from a verified JWT"""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    email: str = ""
    role: str
    name: Optional[str] = None
    lodge_id: Optional[str] = Field(default=None, alias="lodgeId")
    iat: Optional[int] = None
    exp: Optional[int] = None


class LoginRequest(BaseModel):
    """Login request body"""
    email: str
    password: str


class Token(BaseModel):
    """JWT Token response"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: Dict[str, Any]


class AuthenticatedPrincipal(BaseModel):
    """
    Verified caller: token claims plus the identity as currently stored.

    ``identity`` comes from a fresh store lookup, so authorization decisions
    use the stored role even if the token predates a role change.
    """
    user_id: str
    email: str
    token_role: str
    identity: Identity
    lodge_id: Optional[str] = None
    lodge_name: Optional[str] = None

    @property
    def role(self) -> Role:
        return self.identity.role

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "role": self.identity.role.value,
            "token_role": self.token_role,
            "name": self.identity.name,
            "lodge_id": self.lodge_id,
            "lodge_name": self.lodge_name,
        }


class AuthenticationResult(BaseModel):
    identity: Identity
    access_token: str
    expires_in: int
    source: str

    def to_token(self) -> Token:
        return Token(
            access_token=self.access_token,
            expires_in=self.expires_in,
            user=self.identity.to_public_dict(),
        )


# ==================== TOKEN SERVICE ====================

class TokenService:
    """Issues and verifies the single access-token format."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 24 * 60):
        if not secret_key:
            raise ConfigurationError("JWT signing secret is required")
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    @property
    def expires_in(self) -> int:
        return self.expire_minutes * 60

    def issue(
        self,
        user_id: str,
        email: str,
        role: str,
        name: Optional[str] = None,
        lodge_id: Optional[str] = None,
        expires_delta: Optional[timedelta] = None
    ) -> str:
        """
        Create a signed access token.

        Args:
            user_id: Identity id (``userId`` claim)
            email: Identity email
            role: Role; stored upper-cased
            name: Display name, omitted when empty
            lodge_id: Primary lodge, omitted when empty
            expires_delta: Override the configured lifetime

        Returns:
            Encoded JWT
        """
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta if expires_delta is not None else timedelta(minutes=self.expire_minutes))
        claims: Dict[str, Any] = {
            "userId": str(user_id),
            "email": email,
            "role": str(role.value if isinstance(role, Role) else role).upper(),
            "iat": now,
            "exp": expire,
        }
        if name:
            claims["name"] = name
        if lodge_id:
            claims["lodgeId"] = lodge_id
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def issue_for_identity(self, identity: Identity) -> str:
        return self.issue(
            user_id=identity.id,
            email=identity.email,
            role=identity.role.value,
            name=identity.name or None,
            lodge_id=identity.primary_lodge,
        )

    def verify(self, token: str) -> TokenClaims:
        """
        Verify signature and expiry and return the claims.

        Raises:
            AuthenticationError: missing, malformed, expired, or lacking
                ``userId``/``role``
        """
        if not token:
            raise AuthenticationError("No token provided")
        if token.lower().startswith("bearer "):
            token = token[7:]

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except JWTError as e:
            logger.debug(f"JWT decode error: {e}")
            raise AuthenticationError("Invalid token")

        if not payload.get("userId") or not payload.get("role"):
            raise AuthenticationError("Token is missing required claims")

        payload["role"] = str(payload["role"]).upper()
        return TokenClaims.model_validate(payload)


@lru_cache()
def get_token_service() -> TokenService:
    """Token service built from settings; fails when no secret is configured."""
    settings = get_settings()
    return TokenService(
        secret_key=require_signing_secret(settings),
        algorithm=settings.JWT_ALGORITHM,
        expire_minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES,
    )


# ==================== AUTH SERVICE ====================

class AuthService:
    """Authentication against the identity store chain."""

    def __init__(self, store: DocumentStore, token_service: TokenService):
        self.store = store
        self.identities = IdentityStore(store)
        self.token_service = token_service

    async def authenticate(self, email: str, password: str) -> AuthenticationResult:
        """
        Check credentials and issue a token.

        Touches ``lastLogin`` on the record that answered the lookup.

        Raises:
            AuthenticationError: unknown email, wrong password, no stored
                credential, or inactive identity
        """
        lookup = await self.identities.find_by_email(email)
        if lookup is None:
            log_auth_action(AuditAction.IDENTITY_LOGIN_FAILED, user_email=email,
                            success=False, error_message="unknown email")
            raise AuthenticationError("Invalid email or password")

        identity = lookup.identity
        if not identity.password_hash or not verify_password(password, identity.password_hash):
            log_auth_action(AuditAction.IDENTITY_LOGIN_FAILED, user_id=identity.id, user_email=identity.email,
                            success=False, error_message="bad credentials")
            raise AuthenticationError("Invalid email or password")

        if identity.status == IdentityStatus.INACTIVE:
            raise AuthenticationError("Account is inactive")

        identity.last_login = await IdentityService(self.store).touch_last_login(lookup)

        token = self.token_service.issue_for_identity(identity)
        log_auth_action(AuditAction.IDENTITY_LOGIN, user_id=identity.id, user_email=identity.email,
                        details={"source": lookup.source.value})
        logger.info(f"Identity {identity.email} authenticated via {lookup.source.value}")

        return AuthenticationResult(
            identity=identity,
            access_token=token,
            expires_in=self.token_service.expires_in,
            source=lookup.source.value,
        )

    async def verify_token(self, token: str) -> AuthenticatedPrincipal:
        """
        Verify a token and resolve the caller.

        The lodge display name is looked up on every call; nothing is cached.
        """
        claims = self.token_service.verify(token)
        try:
            parse_role(claims.role)
        except ValueError:
            raise AuthenticationError(f"Token carries unknown role {claims.role!r}")

        lookup = await self.identities.find_by_id(claims.user_id)
        if lookup is None:
            raise AuthenticationError("Identity no longer exists")
        identity = lookup.identity

        if parse_role(claims.role) != identity.role:
            logger.info(
                f"Role for {identity.id} changed since token issue: "
                f"{claims.role} -> {identity.role.value}"
            )

        lodge_id = claims.lodge_id or identity.primary_lodge
        lodge = await self.identities.get_lodge(lodge_id) if lodge_id else None

        return AuthenticatedPrincipal(
            user_id=identity.id,
            email=identity.email,
            token_role=claims.role,
            identity=identity,
            lodge_id=lodge_id,
            lodge_name=lodge.name if lodge else None,
        )
