from __future__ import annotations

import asyncio
import functools
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from vib3sales.config import Settings
from vib3sales.logging import get_logger, redact_email
from vib3sales.service.email import EmailService
from vib3sales.service.errors import (
    AuthenticationError,
    DuplicateEmailError,
    EmailAlreadyVerifiedError,
    EmailVerificationRequiredError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    NoActiveSessionError,
    ServerError,
    TooManyAttemptsError,
    UserNotFoundError,
    ValidationError,
)
from vib3sales.service.rate_limit import LoginRateLimiter
from vib3sales.service.sessions import SessionRegistry
from vib3sales.service.tokens import ACCESS, REFRESH, TokenService, generate_secure_token
from vib3sales.storage.errors import ConstraintViolation
from vib3sales.storage.models import Session, User, normalize_email, to_iso, utcnow

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with that email, a password reset link has been sent."
)


def validate_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def password_policy_errors(password: str) -> List[str]:
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not SPECIAL_CHARACTERS.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def _ensure_password_policy(password: str) -> None:
    errors = password_policy_errors(password)
    if errors:
        raise ValidationError(
            "Password does not meet requirements", detail={"errors": errors}
        )


def sanitize_text(value: Any) -> Any:
    """Strip angle brackets and surrounding whitespace from free text."""
    if isinstance(value, str):
        return value.replace("<", "").replace(">", "").strip()
    if isinstance(value, list):
        cleaned = [sanitize_text(item) for item in value]
        return [item for item in cleaned if item != ""]
    return value


def sanitize_user(user: User) -> Dict[str, Any]:
    """Client-safe view of a user; credentials never leave the service."""
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "profilePicture": user.profile_picture,
        "emailVerified": user.email_verified,
        "role": user.role,
        "focus": user.focus,
        "services": user.services,
        "topics": user.topics,
        "avatarInitial": user.avatar_initial,
        "hasPassword": user.has_password,
        "createdAt": to_iso(user.created_at),
        "lastLogin": to_iso(user.last_login) or None,
    }


@dataclass
class AuthContext:
    user_id: str
    email: str
    name: str
    session_id: str
    access_token: str


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    session: Session
    requires_verification: bool


@dataclass
class RefreshResult:
    access_token: str
    user: User
    session: Session


class AuthService:
    """Account lifecycle: signup, login, refresh, verification and password reset.

    Storage calls are synchronous; password hashing and outbound email run in
    worker threads so the event loop is never blocked on them.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionRegistry,
        rate_limiter: LoginRateLimiter,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.email_service = email_service
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            type=Type.ID,
        )
        self.logger = logger

    # passwords
    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        try:
            return await asyncio.to_thread(self._pwd_hasher.verify, user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=user.id)
            return False

    # email
    async def _dispatch_email(self, kind: str, send: Callable[..., bool], *args: Any) -> bool:
        """Run a send in a worker thread; any failure is logged, never raised."""
        if self.email_service is None:
            return False
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(send, *args),
                timeout=self.settings.email_send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.warning("email_dispatch_failed", kind=kind, reason="timeout")
            return False
        except Exception as exc:
            self.logger.warning(
                "email_dispatch_failed",
                kind=kind,
                reason=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            self.logger.warning("email_dispatch_failed", kind=kind, reason="rejected")
        return bool(sent)

    async def _send_verification(self, user: User) -> bool:
        token = generate_secure_token()
        self.store.create_email_verification_token(
            user.id,
            token,
            utcnow() + timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        if self.email_service is None:
            return False
        send = functools.partial(
            self.email_service.send_email_verification,
            ttl_hours=self.settings.email_verification_ttl_hours,
        )
        return await self._dispatch_email("email_verification", send, user.email, token)

    def _enforce_rate_limit(self, email: str) -> None:
        decision = self.rate_limiter.check_allowed(email)
        if not decision.allowed:
            raise TooManyAttemptsError(decision.retry_after_minutes)

    def _open_session(
        self,
        user: User,
        user_agent: Optional[str],
        ip_address: Optional[str],
    ) -> tuple[str, str, Session]:
        access = self.tokens.issue_access_token(user)
        refresh = self.tokens.issue_refresh_token(user)
        session = self.sessions.create(
            user.id,
            access.token,
            refresh.token,
            min(access.expires_at, refresh.expires_at),
            refresh.expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return access.token, refresh.token, session

    # flows
    async def signup(
        self,
        email: Optional[str],
        password: Optional[str],
        name: Optional[str],
        *,
        profile: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        if email:
            self._enforce_rate_limit(email)
        name = sanitize_text(name) if name else name
        if not email or not password or not name:
            raise ValidationError("Email, password, and name are required")
        if not validate_email(email):
            raise ValidationError("Invalid email format", detail={"field": "email"})
        _ensure_password_policy(password)

        normalized = normalize_email(email)
        if self.store.get_user_by_email(normalized):
            raise DuplicateEmailError("User with this email already exists")

        profile = {
            key: sanitize_text(value)
            for key, value in (profile or {}).items()
            if key in ("role", "focus", "services", "topics") and value
        }
        profile["avatar_initial"] = name[0].upper()
        password_hash = await self._hash_password(password)
        try:
            user = self.store.create_user(
                normalized,
                name,
                password_hash=password_hash,
                profile=profile,
                email_verified=False,
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmailError("User with this email already exists") from exc
            raise

        await self._send_verification(user)
        access_token, refresh_token, session = self._open_session(user, user_agent, ip_address)
        self.logger.info("user_signed_up", user_id=user.id, email=redact_email(user.email))
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            session=session,
            requires_verification=True,
        )

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        if not email or not password:
            raise ValidationError("Email and password are required")
        self._enforce_rate_limit(email)

        user = self.store.get_user_by_email(email)
        if user is None or not user.has_password or not await self._verify_password(user, password):
            self.rate_limiter.record(email, ip_address, False)
            self.logger.info("login_failed", email=redact_email(email))
            raise InvalidCredentialsError("Invalid email or password")

        self.rate_limiter.record(email, ip_address, True)
        self.store.touch_last_login(user.id)
        user = self.store.get_user(user.id) or user
        access_token, refresh_token, session = self._open_session(user, user_agent, ip_address)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            session=session,
            requires_verification=not user.email_verified,
        )

    async def logout(self, session_id: Optional[str], user_id: Optional[str] = None) -> None:
        if not session_id:
            raise NoActiveSessionError("No active session")
        if not self.store.revoke_session(session_id, user_id):
            raise NoActiveSessionError("No active session")
        self.logger.info("logout", session_id=session_id, user_id=user_id)

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        if not refresh_token:
            raise ValidationError("Refresh token required")
        payload = self.tokens.verify(refresh_token)
        if payload is None or payload.type != REFRESH:
            raise InvalidRefreshTokenError("Invalid refresh token")
        session = self.sessions.find_active_by_refresh_token(refresh_token, payload.user_id)
        if session is None:
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        user = self.store.get_user(payload.user_id)
        if user is None:
            raise UserNotFoundError("User not found")

        access = self.tokens.issue_access_token(user)
        rotated = self.sessions.rotate_access_token(session.id, access.token, access.expires_at)
        if rotated is None:
            # revoked between lookup and rotation
            raise InvalidRefreshTokenError("Invalid or expired refresh token")
        self.logger.info("access_token_refreshed", user_id=user.id, session_id=session.id)
        return RefreshResult(access_token=access.token, user=user, session=rotated)

    async def authenticate(
        self, authorization: Optional[str], cookie_token: Optional[str] = None
    ) -> AuthContext:
        token = None
        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() == "bearer" and credentials.strip():
                token = credentials.strip()
        if token is None:
            token = cookie_token
        if not token:
            raise AuthenticationError("Access token required")

        payload = self.tokens.verify(token)
        if payload is None or payload.type != ACCESS:
            raise AuthenticationError("Invalid or expired token")
        session = self.sessions.find_active_by_access_token(token, payload.user_id)
        if session is None:
            raise AuthenticationError("Session expired or invalid")
        self.sessions.touch_activity(session.id)
        return AuthContext(
            user_id=payload.user_id,
            email=payload.email,
            name=payload.name,
            session_id=session.id,
            access_token=token,
        )

    def require_verified(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        if not user.email_verified:
            raise EmailVerificationRequiredError("Email verification required")
        return user

    async def verify_email(self, token: Optional[str]) -> User:
        if not token:
            raise ValidationError("Verification token required")
        record = self.store.consume_email_verification_token(token, utcnow())
        if record is None:
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")
        user = self.store.get_user(record.user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        self.store.mark_email_verified(user.id)
        self.logger.info("email_verified", user_id=user.id)
        if self.email_service is not None:
            await self._dispatch_email("welcome", self.email_service.send_welcome, user.email, user.name)
        return self.store.get_user(user.id) or user

    async def resend_verification(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        if user.email_verified:
            raise EmailAlreadyVerifiedError("Email already verified")
        if not await self._send_verification(user):
            raise ServerError("Failed to send verification email")

    async def forgot_password(self, email: Optional[str]) -> str:
        if not email:
            raise ValidationError("Email is required")
        self._enforce_rate_limit(email)
        user = self.store.get_user_by_email(email)
        if user is not None and user.has_password:
            token = generate_secure_token()
            self.store.create_password_reset_token(
                user.id,
                token,
                utcnow() + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
            if self.email_service is not None:
                send = functools.partial(
                    self.email_service.send_password_reset,
                    ttl_minutes=self.settings.password_reset_ttl_minutes,
                )
                await self._dispatch_email("password_reset", send, user.email, token)
            self.logger.info("password_reset_requested", user_id=user.id)
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(self, token: Optional[str], new_password: Optional[str]) -> str:
        """Set a new password from a reset token and end every session of the user.

        Returns the affected user id.
        """
        if not token or not new_password:
            raise ValidationError("Token and new password are required")
        _ensure_password_policy(new_password)
        record = self.store.find_password_reset_token(token, utcnow())
        if record is None:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")
        # the token is spent only once the new hash is stored
        password_hash = await self._hash_password(new_password)
        self.store.set_password_hash(record.user_id, password_hash)
        if self.store.consume_password_reset_token(token, utcnow()) is None:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")
        revoked = self.sessions.revoke_all_for_user(record.user_id)
        self.logger.info("password_reset", user_id=record.user_id, sessions_revoked=revoked)
        return record.user_id

    # profile and sessions
    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        return user

    def update_profile(self, user_id: str, patch: Dict[str, Any]) -> User:
        changes = {
            key: sanitize_text(value)
            for key, value in patch.items()
            if key in User.PROFILE_FIELDS and key != "avatar_initial"
        }
        if "name" in changes:
            if not changes["name"]:
                raise ValidationError("Name cannot be empty", detail={"field": "name"})
            changes["avatar_initial"] = changes["name"][0].upper()
        user = self.store.update_user_profile(user_id, changes)
        if user is None:
            raise UserNotFoundError("User not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(changes))
        return user

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.sessions.list_active_for_user(user_id)

    def revoke_session(self, session_id: str, user_id: str) -> bool:
        return self.sessions.revoke(session_id, user_id)


__all__ = [
    "AuthContext",
    "AuthResult",
    "AuthService",
    "FORGOT_PASSWORD_MESSAGE",
    "RefreshResult",
    "password_policy_errors",
    "sanitize_text",
    "sanitize_user",
    "validate_email",
]
