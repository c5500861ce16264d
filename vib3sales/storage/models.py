from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    sso_id: Optional[str] = None
    email_verified: bool = False
    role: Optional[str] = None
    focus: Optional[List[str]] = None
    services: Optional[List[str]] = None
    topics: Optional[List[str]] = None
    avatar_initial: Optional[str] = None
    profile_picture: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    # fields a user may change through the profile endpoint
    PROFILE_FIELDS: ClassVar[tuple[str, ...]] = (
        "name",
        "role",
        "focus",
        "services",
        "topics",
        "avatar_initial",
        "profile_picture",
    )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class Session:
    id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        refresh_expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        if expires_at > refresh_expires_at:
            raise ValueError("access expiry must not exceed refresh expiry")
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            last_activity_at=now,
        )

    def is_access_active(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())

    def is_refresh_active(self, now: Optional[datetime] = None) -> bool:
        return self.refresh_expires_at > (now or utcnow())


@dataclass
class OneTimeToken:
    """Single-use secret bound to a user; ``used`` flips to True exactly once."""

    id: str
    user_id: str
    token: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token: str, ttl: timedelta):
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_consumable(self, now: Optional[datetime] = None) -> bool:
        return not self.used and self.expires_at > (now or utcnow())


@dataclass
class PasswordResetToken(OneTimeToken):
    pass


@dataclass
class EmailVerificationToken(OneTimeToken):
    pass


@dataclass
class LoginAttempt:
    id: str
    email: str
    ip_address: Optional[str]
    successful: bool
    attempted_at: datetime = field(default_factory=utcnow)


class LeadStatus(str, Enum):
    NEW = "New"
    CONTACTED = "Contacted"
    MEETING = "Meeting"
    PROPOSAL = "Proposal"
    WON = "Won"
    LOST = "Lost"


class LeadPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class BusinessSource:
    """Snapshot of a local-business search result."""

    source_id: str
    data: Dict[str, Any]

    kind: ClassVar[str] = "business"
    id_field: ClassVar[str] = "businessId"
    payload_field: ClassVar[str] = "business"
    lead_id_prefix: ClassVar[str] = "lead_"

    def display_name(self) -> str:
        return _text(self.data.get("name")) or "Untitled Lead"

    def subtitle(self) -> str:
        return f"{_text(self.data.get('industry'))} • {_text(self.data.get('location'))}"

    def contact_email(self) -> str:
        return _text(self.data.get("contactEmail"))

    def contact_phone(self) -> str:
        return _text(self.data.get("contactPhone"))

    def description(self) -> str:
        return ""

    def website_url(self) -> str:
        return _text(self.data.get("websiteUrl"))


@dataclass
class SocialSource:
    """Snapshot of a social/forum trend post."""

    source_id: str
    data: Dict[str, Any]

    kind: ClassVar[str] = "social"
    id_field: ClassVar[str] = "socialId"
    payload_field: ClassVar[str] = "socialIdea"
    lead_id_prefix: ClassVar[str] = "lead_social_"

    def display_name(self) -> str:
        return _text(self.data.get("title")) or "Untitled Lead"

    def subtitle(self) -> str:
        return f"@{_text(self.data.get('author'))} • {_text(self.data.get('category'))}"

    def contact_email(self) -> str:
        return _text(self.data.get("authorHandle"))

    def contact_phone(self) -> str:
        return ""

    def description(self) -> str:
        return _text(self.data.get("description"))

    def website_url(self) -> str:
        return _text(self.data.get("sourceUrl"))


@dataclass
class JobSource:
    """Snapshot of a job posting."""

    source_id: str
    data: Dict[str, Any]

    kind: ClassVar[str] = "job"
    id_field: ClassVar[str] = "jobId"
    payload_field: ClassVar[str] = "job"
    lead_id_prefix: ClassVar[str] = "lead_job_"

    def display_name(self) -> str:
        title = self.data.get("title")
        company = self.data.get("company")
        if not title and not company:
            return "Untitled Lead"
        return f"{_text(title)} at {_text(company)}"

    def subtitle(self) -> str:
        salary = self.data.get("salaryRange") or "Salary N/A"
        return f"{_text(self.data.get('location'))} • {salary}"

    def contact_email(self) -> str:
        return ""

    def contact_phone(self) -> str:
        return ""

    def description(self) -> str:
        return ""

    def website_url(self) -> str:
        return _text(self.data.get("url"))


LeadSource = Union[BusinessSource, SocialSource, JobSource]

SOURCE_TYPES: Dict[str, type] = {
    BusinessSource.kind: BusinessSource,
    SocialSource.kind: SocialSource,
    JobSource.kind: JobSource,
}


def build_source(kind: str, data: Dict[str, Any]) -> LeadSource:
    """Build the tagged source for ``kind`` from a snapshot carrying an ``id``."""
    source_cls = SOURCE_TYPES.get(kind)
    if source_cls is None:
        raise ValueError(f"unknown lead source '{kind}'")
    source_id = data.get("id")
    if source_id is None or str(source_id) == "":
        raise ValueError(f"{kind} snapshot requires an id")
    return source_cls(source_id=str(source_id), data=dict(data))


@dataclass
class CrmLead:
    id: str
    owner_user_id: str
    source: LeadSource
    status: LeadStatus = LeadStatus.NEW
    priority: LeadPriority = LeadPriority.MEDIUM
    tags: List[str] = field(default_factory=list)
    notes: str = ""
    next_follow_up_at: Optional[datetime] = None
    last_contacted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def source_key(self) -> tuple[str, str]:
        return (self.source.kind, self.source.source_id)


def to_iso(value: Optional[datetime]) -> str:
    """UTC ISO-8601 with a ``Z`` suffix, or an empty string for None."""
    if value is None:
        return ""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
