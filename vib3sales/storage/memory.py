from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from vib3sales.logging import get_logger
from vib3sales.storage.errors import ConstraintViolation
from vib3sales.storage.models import (
    CrmLead,
    EmailVerificationToken,
    LeadPriority,
    LeadStatus,
    LoginAttempt,
    OneTimeToken,
    PasswordResetToken,
    Session,
    User,
    build_source,
    normalize_email,
    utcnow,
)

_TokenT = TypeVar("_TokenT", bound=OneTimeToken)


class MemoryStore:
    """In-process backing store persisted to a JSON snapshot under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/vib3sales") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.password_reset_tokens: Dict[str, PasswordResetToken] = {}
        self.email_verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.leads: Dict[str, CrmLead] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        self._state_path()

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        sso_id: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        email_verified: bool = False,
    ) -> User:
        if not password_hash and not sso_id:
            raise ConstraintViolation(
                "user requires a password or an external identity",
                {"field": "password_hash"},
            )
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if sso_id and any(u.sso_id == sso_id for u in self.users.values()):
                raise ConstraintViolation("sso id already linked", {"field": "sso_id"})
            profile_values = {
                key: value
                for key, value in (profile or {}).items()
                if key in User.PROFILE_FIELDS and key != "name"
            }
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                password_hash=password_hash,
                sso_id=sso_id,
                email_verified=email_verified,
                created_at=now,
                updated_at=now,
                **profile_values,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user_by_sso_id(self, sso_id: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.sso_id == sso_id), None)
            return replace(user) if user else None

    def update_user_profile(self, user_id: str, patch: Dict[str, Any]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in patch.items():
                if key in User.PROFILE_FIELDS:
                    setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def _update_user(self, user_id: str, **changes: Any) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()

    def mark_email_verified(self, user_id: str) -> None:
        self._update_user(user_id, email_verified=True, updated_at=utcnow())

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        self._update_user(user_id, password_hash=password_hash, updated_at=utcnow())

    def touch_last_login(self, user_id: str) -> None:
        self._update_user(user_id, last_login=utcnow())

    # sessions
    def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        refresh_expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.sessions.values():
                if access_token in (existing.access_token, existing.refresh_token) or (
                    refresh_token in (existing.access_token, existing.refresh_token)
                ):
                    raise ConstraintViolation("session token already issued", {"field": "token"})
            sess = Session.new(
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def find_session_by_access_token(
        self, token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.access_token == token
                    and sess.user_id == user_id
                    and sess.is_access_active(now)
                ):
                    return replace(sess)
            return None

    def find_session_by_refresh_token(
        self, token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.refresh_token == token
                    and sess.user_id == user_id
                    and sess.is_refresh_active(now)
                ):
                    return replace(sess)
            return None

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_activity_at = at
            self._persist_state()

    def rotate_session_token(
        self, session_id: str, access_token: str, expires_at: datetime, at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.access_token = access_token
            sess.expires_at = min(expires_at, sess.refresh_expires_at)
            sess.last_activity_at = at
            self._persist_state()
            return replace(sess)

    def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or (user_id is not None and sess.user_id != user_id):
                return False
            self.sessions.pop(session_id, None)
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_access_active(now)
            ]
        return sorted(active, key=lambda s: s.last_activity_at, reverse=True)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if not sess.is_access_active(now) and not sess.is_refresh_active(now)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # single-use tokens
    def _insert_token(self, table: Dict[str, _TokenT], token: _TokenT) -> _TokenT:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if any(existing.token == token.token for existing in table.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            table[token.id] = token
            self._persist_state()
            return replace(token)

    def _consume_token(
        self, table: Dict[str, _TokenT], token: str, now: datetime
    ) -> Optional[_TokenT]:
        with self._data_lock:
            for record in table.values():
                if record.token == token and record.is_consumable(now):
                    record.used = True
                    self._persist_state()
                    return replace(record)
            return None

    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        record = PasswordResetToken(
            id=str(uuid.uuid4()), user_id=user_id, token=token, expires_at=expires_at
        )
        return self._insert_token(self.password_reset_tokens, record)

    def find_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for record in self.password_reset_tokens.values():
                if record.token == token and record.is_consumable(now):
                    return replace(record)
            return None

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        return self._consume_token(self.password_reset_tokens, token, now)

    def create_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken:
        record = EmailVerificationToken(
            id=str(uuid.uuid4()), user_id=user_id, token=token, expires_at=expires_at
        )
        return self._insert_token(self.email_verification_tokens, record)

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        return self._consume_token(self.email_verification_tokens, token, now)

    # login attempts
    def record_login_attempt(
        self, email: str, ip_address: Optional[str], successful: bool, at: datetime
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            ip_address=ip_address,
            successful=successful,
            attempted_at=at,
        )
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()
        return attempt

    def list_failed_login_attempts(self, email: str, since: datetime) -> List[LoginAttempt]:
        normalized = normalize_email(email)
        with self._data_lock:
            failed = [
                a
                for a in self.login_attempts
                if a.email == normalized and not a.successful and a.attempted_at >= since
            ]
        return sorted(failed, key=lambda a: a.attempted_at)

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.attempted_at >= cutoff]
            removed = len(self.login_attempts) - len(kept)
            if removed:
                self.login_attempts = kept
                self._persist_state()
            return removed

    # crm leads
    def list_leads(self, owner_user_id: str) -> List[CrmLead]:
        with self._data_lock:
            return [
                self._copy_lead(lead)
                for lead in self.leads.values()
                if lead.owner_user_id == owner_user_id
            ]

    def get_lead(self, owner_user_id: str, lead_id: str) -> Optional[CrmLead]:
        with self._data_lock:
            lead = self.leads.get(lead_id)
            if not lead or lead.owner_user_id != owner_user_id:
                return None
            return self._copy_lead(lead)

    def find_lead_by_source(
        self, owner_user_id: str, kind: str, source_id: str
    ) -> Optional[CrmLead]:
        with self._data_lock:
            for lead in self.leads.values():
                if lead.owner_user_id == owner_user_id and lead.source_key == (kind, source_id):
                    return self._copy_lead(lead)
            return None

    def insert_lead(self, lead: CrmLead) -> CrmLead:
        with self._data_lock:
            if lead.id in self.leads:
                raise ConstraintViolation("lead id already exists", {"field": "id"})
            for existing in self.leads.values():
                if (
                    existing.owner_user_id == lead.owner_user_id
                    and existing.source_key == lead.source_key
                ):
                    raise ConstraintViolation(
                        "lead already saved for source", {"field": "source"}
                    )
            self.leads[lead.id] = self._copy_lead(lead)
            self._persist_state()
            return self._copy_lead(lead)

    def update_lead(self, lead: CrmLead) -> Optional[CrmLead]:
        with self._data_lock:
            existing = self.leads.get(lead.id)
            if not existing or existing.owner_user_id != lead.owner_user_id:
                return None
            self.leads[lead.id] = self._copy_lead(lead)
            self._persist_state()
            return self._copy_lead(lead)

    def delete_lead(self, owner_user_id: str, lead_id: str) -> bool:
        with self._data_lock:
            lead = self.leads.get(lead_id)
            if not lead or lead.owner_user_id != owner_user_id:
                return False
            self.leads.pop(lead_id, None)
            self._persist_state()
            return True

    def delete_lead_by_source(self, owner_user_id: str, kind: str, source_id: str) -> bool:
        with self._data_lock:
            match = next(
                (
                    lead_id
                    for lead_id, lead in self.leads.items()
                    if lead.owner_user_id == owner_user_id
                    and lead.source_key == (kind, source_id)
                ),
                None,
            )
            if match is None:
                return False
            self.leads.pop(match, None)
            self._persist_state()
            return True

    @staticmethod
    def _copy_lead(lead: CrmLead) -> CrmLead:
        source = type(lead.source)(source_id=lead.source.source_id, data=dict(lead.source.data))
        return replace(lead, source=source, tags=list(lead.tags))

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "password_reset_tokens": [
                self._serialize_token(t) for t in self.password_reset_tokens.values()
            ],
            "email_verification_tokens": [
                self._serialize_token(t) for t in self.email_verification_tokens.values()
            ],
            "login_attempts": [self._serialize_attempt(a) for a in self.login_attempts],
            "leads": [self._serialize_lead(lead) for lead in self.leads.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.password_reset_tokens = {
            t["id"]: self._deserialize_token(PasswordResetToken, t)
            for t in data.get("password_reset_tokens", [])
        }
        self.email_verification_tokens = {
            t["id"]: self._deserialize_token(EmailVerificationToken, t)
            for t in data.get("email_verification_tokens", [])
        }
        self.login_attempts = [
            self._deserialize_attempt(a) for a in data.get("login_attempts", [])
        ]
        self.leads = {
            lead["id"]: self._deserialize_lead(lead) for lead in data.get("leads", [])
        }
        self.logger.info(
            "memory_store_state_loaded", users=len(self.users), leads=len(self.leads)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "sso_id": user.sso_id,
            "email_verified": user.email_verified,
            "role": user.role,
            "focus": user.focus,
            "services": user.services,
            "topics": user.topics,
            "avatar_initial": user.avatar_initial,
            "profile_picture": user.profile_picture,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login": self._serialize_datetime(user.last_login),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash"),
            sso_id=data.get("sso_id"),
            email_verified=bool(data.get("email_verified", False)),
            role=data.get("role"),
            focus=data.get("focus"),
            services=data.get("services"),
            topics=data.get("topics"),
            avatar_initial=data.get("avatar_initial"),
            profile_picture=data.get("profile_picture"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            last_login=self._deserialize_datetime(data.get("last_login")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "refresh_expires_at": self._serialize_datetime(session.refresh_expires_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
        )

    def _serialize_token(self, token: OneTimeToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token": token.token,
            "expires_at": self._serialize_datetime(token.expires_at),
            "used": token.used,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, token_cls: Type[_TokenT], data: dict) -> _TokenT:
        return token_cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_attempt(self, attempt: LoginAttempt) -> dict:
        return {
            "id": attempt.id,
            "email": attempt.email,
            "ip_address": attempt.ip_address,
            "successful": attempt.successful,
            "attempted_at": self._serialize_datetime(attempt.attempted_at),
        }

    def _deserialize_attempt(self, data: dict) -> LoginAttempt:
        return LoginAttempt(
            id=str(data["id"]),
            email=data["email"],
            ip_address=data.get("ip_address"),
            successful=bool(data["successful"]),
            attempted_at=self._deserialize_datetime(data["attempted_at"]),
        )

    def _serialize_lead(self, lead: CrmLead) -> dict:
        return {
            "id": lead.id,
            "owner_user_id": lead.owner_user_id,
            "source": lead.source.kind,
            "source_id": lead.source.source_id,
            "snapshot": lead.source.data,
            "status": lead.status.value,
            "priority": lead.priority.value,
            "tags": lead.tags,
            "notes": lead.notes,
            "next_follow_up_at": self._serialize_datetime(lead.next_follow_up_at),
            "last_contacted_at": self._serialize_datetime(lead.last_contacted_at),
            "created_at": self._serialize_datetime(lead.created_at),
            "updated_at": self._serialize_datetime(lead.updated_at),
        }

    def _deserialize_lead(self, data: dict) -> CrmLead:
        snapshot = dict(data.get("snapshot") or {})
        snapshot.setdefault("id", data["source_id"])
        return CrmLead(
            id=str(data["id"]),
            owner_user_id=str(data["owner_user_id"]),
            source=build_source(data["source"], snapshot),
            status=LeadStatus(data.get("status", LeadStatus.NEW.value)),
            priority=LeadPriority(data.get("priority", LeadPriority.MEDIUM.value)),
            tags=list(data.get("tags") or []),
            notes=data.get("notes") or "",
            next_follow_up_at=self._deserialize_datetime(data.get("next_follow_up_at")),
            last_contacted_at=self._deserialize_datetime(data.get("last_contacted_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
