from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from vib3sales.storage.models import (
    SOURCE_TYPES,
    CrmLead,
    LeadPriority,
    LeadSource,
    LeadStatus,
    Session,
    build_source,
    to_iso,
)

MAX_STRING_LENGTH = 65536
MAX_TAG_LENGTH = 64
MAX_LIST_ITEMS = 50

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_token",
    "conflict",
    "duplicate_email",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys while exposing snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
    )


# auth requests; presence checks live in the service so messages stay stable
class SignupRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=120)
    role: Optional[str] = Field(default=None, max_length=120)
    focus: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    services: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    topics: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)

    def profile(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "focus": self.focus,
            "services": self.services,
            "topics": self.topics,
        }


class LoginRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)
    remember_me: bool = False


class TokenRefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class EmailVerificationRequest(CamelModel):
    token: Optional[str] = Field(default=None, max_length=256)


class PasswordResetRequest(CamelModel):
    email: Optional[str] = Field(default=None, max_length=254)


class PasswordResetConfirm(CamelModel):
    token: Optional[str] = Field(default=None, max_length=256)
    new_password: Optional[str] = Field(default=None, max_length=128)


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, max_length=120)
    role: Optional[str] = Field(default=None, max_length=120)
    focus: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    services: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    topics: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    profile_picture: Optional[str] = Field(default=None, max_length=2048)


# auth responses
class AuthPayload(CamelModel):
    message: str
    user: Dict[str, Any]
    access_token: str
    refresh_token: str
    csrf_token: str
    requires_verification: bool


class RefreshPayload(CamelModel):
    access_token: str
    user: Dict[str, Any]


class SessionInfo(CamelModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: str
    last_activity_at: str
    expires_at: str
    is_current: bool

    @classmethod
    def from_session(cls, session: Session, current_session_id: Optional[str]) -> "SessionInfo":
        return cls(
            id=session.id,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=to_iso(session.created_at),
            last_activity_at=to_iso(session.last_activity_at),
            expires_at=to_iso(session.expires_at),
            is_current=session.id == current_session_id,
        )


# crm
class LeadSaveRequest(CamelModel):
    """Body for saving a lead: the source kind plus the snapshot under its key.

    ``{"source": "business", "business": {...}}``,
    ``{"source": "social", "socialIdea": {...}}`` or
    ``{"source": "job", "job": {...}}``.
    """

    source: Literal["business", "social", "job"]
    business: Optional[Dict[str, Any]] = None
    social_idea: Optional[Dict[str, Any]] = None
    job: Optional[Dict[str, Any]] = None
    status: Optional[LeadStatus] = None
    priority: Optional[LeadPriority] = None

    @model_validator(mode="after")
    def _require_snapshot(self):
        snapshot = self.snapshot()
        if snapshot is None:
            field = SOURCE_TYPES[self.source].payload_field
            raise ValueError(f"'{field}' is required when source is '{self.source}'")
        if snapshot.get("id") in (None, ""):
            raise ValueError("snapshot requires an id")
        return self

    def snapshot(self) -> Optional[Dict[str, Any]]:
        return {
            "business": self.business,
            "social": self.social_idea,
            "job": self.job,
        }[self.source]

    def to_source(self) -> LeadSource:
        return build_source(self.source, self.snapshot() or {})


class LeadPatchRequest(CamelModel):
    status: Optional[LeadStatus] = None
    priority: Optional[LeadPriority] = None
    tags: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    notes: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    next_follow_up_at: Optional[datetime] = None
    last_contacted_at: Optional[datetime] = None

    @field_validator("tags")
    @classmethod
    def _validate_tag_length(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        for tag in value or []:
            if len(tag) > MAX_TAG_LENGTH:
                raise ValueError(f"tags must be at most {MAX_TAG_LENGTH} characters")
        return value

    def changes(self) -> Dict[str, Any]:
        """Only the fields the client actually sent, snake_case keyed."""
        return self.model_dump(exclude_unset=True, by_alias=False)


def lead_payload(lead: CrmLead) -> Dict[str, Any]:
    """camelCase lead record with the snapshot under its source-specific key."""
    source = lead.source
    return {
        "id": lead.id,
        "ownerUserId": lead.owner_user_id,
        "source": source.kind,
        source.id_field: source.source_id,
        source.payload_field: dict(source.data),
        "status": lead.status.value,
        "priority": lead.priority.value,
        "tags": list(lead.tags),
        "notes": lead.notes,
        "nextFollowUpAt": to_iso(lead.next_follow_up_at) or None,
        "lastContactedAt": to_iso(lead.last_contacted_at) or None,
        "createdAt": to_iso(lead.created_at),
        "updatedAt": to_iso(lead.updated_at),
    }
