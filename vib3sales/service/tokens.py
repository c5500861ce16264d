from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from vib3sales.config import Settings
from vib3sales.logging import get_logger
from vib3sales.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def generate_secure_token() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    email: str
    name: str
    type: str
    issued_at: int
    expires_at: int
    jti: str


class TokenService:
    """Issues and verifies HS256 bearer tokens.

    Tokens are stateless; whether a token still grants access is decided by
    the session registry, not here.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def issue_access_token(self, user: User) -> IssuedToken:
        return self._issue(user, ACCESS, self.settings.access_token_ttl)

    def issue_refresh_token(self, user: User) -> IssuedToken:
        return self._issue(user, REFRESH, self.settings.refresh_token_ttl)

    def _issue(self, user: User, token_type: str, ttl: timedelta) -> IssuedToken:
        now = int(time.time())
        exp = now + int(ttl.total_seconds())
        payload = {
            "userId": user.id,
            "email": user.email,
            "name": user.name,
            "type": token_type,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": exp,
            # distinguishes tokens minted in the same second
            "jti": str(uuid.uuid4()),
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def verify(self, token: Optional[str]) -> Optional[TokenPayload]:
        """Return the decoded payload, or None for any malformed, forged or expired token."""
        if not token:
            return None
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        try:
            return TokenPayload(
                user_id=str(payload["userId"]),
                email=str(payload["email"]),
                name=str(payload.get("name") or ""),
                type=str(payload["type"]),
                issued_at=int(payload.get("iat") or 0),
                expires_at=int(payload["exp"]),
                jti=str(payload.get("jti") or ""),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_payload_incomplete")
            return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload


__all__ = [
    "ACCESS",
    "REFRESH",
    "IssuedToken",
    "TokenPayload",
    "TokenService",
    "generate_secure_token",
]
