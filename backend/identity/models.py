"""
Identity - Document Models

Pydantic models for the canonical identity record, the two legacy record
shapes it is reconciled from, and the lodge hierarchy.

Documents are persisted with camelCase keys (``primaryLodge``,
``passwordHash``, ...); Python code uses the snake_case attributes.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from identity.roles import Role, coerce_role, parse_role

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive legacy timestamps as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _as_ref(value: Any) -> Any:
    # Exported Mongo ids arrive as {"$oid": "..."}
    if isinstance(value, dict) and "$oid" in value:
        return value["$oid"]
    if value is None or isinstance(value, str):
        return value
    return str(value)


Ref = Annotated[str, BeforeValidator(_as_ref)]


def merge_lodge_refs(*groups: Union[Optional[str], Iterable[Optional[str]]]) -> List[str]:
    """Union of lodge references, first occurrence order, empties dropped."""
    merged: List[str] = []
    for group in groups:
        if group is None:
            continue
        items = [group] if isinstance(group, str) else group
        for ref in items:
            if ref and ref not in merged:
                merged.append(ref)
    return merged


def split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """First token is the first name, the remainder the last name."""
    parts = (name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


def join_name(first_name: Optional[str], last_name: Optional[str]) -> str:
    return " ".join(p.strip() for p in (first_name, last_name) if p and p.strip())


class IdentityStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


def coerce_status(value: Any) -> IdentityStatus:
    if isinstance(value, IdentityStatus):
        return value
    if not value:
        return IdentityStatus.ACTIVE
    try:
        return IdentityStatus(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unrecognised status {value!r}, treating as active")
        return IdentityStatus.ACTIVE


class DocumentModel(BaseModel):
    """Base for models stored as camelCase documents."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, document: Dict[str, Any]):
        return cls.model_validate(document)


class LodgeMembership(DocumentModel):
    lodge: Ref
    position: str = "MEMBER"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True


# ==================== CANONICAL IDENTITY ====================

class Identity(DocumentModel):
    """
    Canonical identity record.

    The single source of truth once reconciliation has run. ``name`` and
    ``first_name``/``last_name`` are kept consistent, and ``lodges`` always
    contains ``primary_lodge`` when one is set.
    """
    id: Ref = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    password_hash: Optional[str] = None
    name: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role = Role.MEMBER
    status: IdentityStatus = IdentityStatus.ACTIVE

    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    occupation: Optional[str] = None
    bio: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    profile_image: Optional[str] = None

    primary_lodge: Optional[Ref] = None
    primary_lodge_position: Optional[str] = "MEMBER"
    lodges: List[Ref] = Field(default_factory=list)
    lodge_memberships: List[LodgeMembership] = Field(default_factory=list)
    administered_lodges: List[Ref] = Field(default_factory=list)

    member_since: datetime = Field(default_factory=utcnow)
    last_login: Optional[datetime] = None
    created: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("email", mode="before")
    @classmethod
    def normalise_email(cls, value: Any) -> str:
        email = str(value or "").strip().lower()
        if "@" not in email:
            raise ValueError(f"Invalid email: {value!r}")
        return email

    @field_validator("role", mode="before")
    @classmethod
    def normalise_role(cls, value: Any) -> Role:
        return parse_role(value)

    @field_validator("status", mode="before")
    @classmethod
    def normalise_status(cls, value: Any) -> IdentityStatus:
        return coerce_status(value)

    @model_validator(mode="after")
    def keep_derived_fields_consistent(self) -> "Identity":
        if not self.name and (self.first_name or self.last_name):
            self.name = join_name(self.first_name, self.last_name)
        elif self.name and not (self.first_name or self.last_name):
            self.first_name, self.last_name = split_name(self.name)
        self.lodges = merge_lodge_refs(self.primary_lodge, self.lodges)
        self.administered_lodges = merge_lodge_refs(self.administered_lodges)
        return self

    def lodge_refs(self) -> List[str]:
        """Every lodge this identity belongs to: primary, lodges, active memberships."""
        return merge_lodge_refs(
            self.primary_lodge,
            self.lodges,
            [m.lodge for m in self.lodge_memberships if m.is_active],
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Document without the credential hash."""
        document = self.to_document()
        document.pop("passwordHash", None)
        return document


# ==================== LEGACY RECORDS ====================

class LegacyAccountRecord(DocumentModel):
    """Credential-first record from the legacy ``users`` store."""
    id: Ref
    email: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    # Profile fields written by later updates
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    occupation: Optional[str] = None
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    primary_lodge: Optional[Ref] = None
    lodges: List[Ref] = Field(default_factory=list)
    administered_lodges: List[Ref] = Field(default_factory=list)
    member_since: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("email", mode="before")
    @classmethod
    def require_email(cls, value: Any) -> str:
        if not value or not str(value).strip():
            raise ValueError("email is required")
        return str(value).strip()

    def to_identity(self, fallback: Optional[datetime] = None) -> Identity:
        """Convert to the canonical shape; ``fallback`` fills missing timestamps."""
        fallback = fallback or utcnow()
        if self.first_name or self.last_name:
            first_name, last_name = self.first_name, self.last_name
        else:
            first_name, last_name = split_name(self.name)
        created = self.created or self.member_since
        return Identity(
            id=self.id,
            email=self.email,
            password_hash=self.password_hash,
            name=(self.name or "").strip(),
            first_name=first_name,
            last_name=last_name,
            role=coerce_role(self.role),
            status=coerce_status(self.status),
            phone=self.phone,
            address=self.address,
            city=self.city,
            state=self.state,
            zip_code=self.zip_code,
            country=self.country,
            interests=list(self.interests),
            occupation=self.occupation,
            bio=self.bio,
            profile_image=self.profile_image,
            primary_lodge=self.primary_lodge,
            lodges=merge_lodge_refs(self.primary_lodge, self.lodges),
            administered_lodges=self.administered_lodges,
            member_since=self.member_since or created or fallback,
            last_login=self.last_login,
            created=created or fallback,
            updated_at=self.updated_at or created or fallback,
        )


class LegacyMemberProfileRecord(DocumentModel):
    """Profile-first record from the legacy ``members`` store."""
    id: Ref
    email: str
    password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    occupation: Optional[str] = None
    bio: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    profile_image: Optional[str] = None
    primary_lodge: Optional[Ref] = None
    primary_lodge_position: Optional[str] = None
    lodges: List[Ref] = Field(default_factory=list)
    lodge_memberships: List[LodgeMembership] = Field(default_factory=list)
    member_since: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("email", mode="before")
    @classmethod
    def require_email(cls, value: Any) -> str:
        if not value or not str(value).strip():
            raise ValueError("email is required")
        return str(value).strip()

    def membership_lodges(self) -> List[str]:
        return [m.lodge for m in self.lodge_memberships]

    def to_identity(self, password_hash: Optional[str] = None, fallback: Optional[datetime] = None) -> Identity:
        """
        Convert to the canonical shape.

        The profile ``password`` is never copied as-is; callers pass the
        verified or freshly computed hash.
        """
        fallback = fallback or utcnow()
        created = self.created_at or self.member_since
        return Identity(
            id=self.id,
            email=self.email,
            password_hash=password_hash,
            first_name=self.first_name,
            last_name=self.last_name,
            role=coerce_role(self.role),
            status=coerce_status(self.status),
            phone=self.phone,
            address=self.address,
            city=self.city,
            state=self.state,
            zip_code=self.zip_code,
            country=self.country,
            occupation=self.occupation,
            bio=self.bio,
            interests=list(self.interests),
            profile_image=self.profile_image,
            primary_lodge=self.primary_lodge,
            primary_lodge_position=self.primary_lodge_position or "MEMBER",
            lodges=merge_lodge_refs(self.primary_lodge, self.lodges, self.membership_lodges()),
            lodge_memberships=list(self.lodge_memberships),
            member_since=self.member_since or created or fallback,
            created=created or fallback,
            updated_at=self.updated_at or created or fallback,
        )


# ==================== LODGE HIERARCHY ====================

class Lodge(DocumentModel):
    """
    A lodge. ``district`` and ``parent_lodge`` are two independent edges
    pointing at a district anchor.
    """
    id: Ref
    name: str = ""
    number: Optional[Union[int, str]] = None
    location: Optional[str] = None
    district: Optional[Ref] = None
    parent_lodge: Optional[Ref] = None
    is_active: bool = True


class LodgeAdminGrant(DocumentModel):
    """Explicit per-lodge admin grant."""
    id: Ref = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Ref
    lodge_id: Ref
    role: str = Role.LODGE_ADMIN.value
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True

    def is_current(self, now: Optional[datetime] = None) -> bool:
        """Active LODGE_ADMIN grant whose date window covers ``now``."""
        if not self.is_active or coerce_role(self.role) != Role.LODGE_ADMIN:
            return False
        now = now or utcnow()
        if self.start_date is not None and as_aware(self.start_date) > now:
            return False
        if self.end_date is not None and as_aware(self.end_date) <= now:
            return False
        return True
