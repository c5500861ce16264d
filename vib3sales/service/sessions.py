from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from vib3sales.logging import get_logger
from vib3sales.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionRegistry:
    """Server-side record of which issued tokens are still live.

    A session may be used on access routes while ``now < expires_at`` and on
    the refresh route while ``now < refresh_expires_at``. Revocation deletes
    the row; every lookup is scoped to the owning user.
    """

    def __init__(self, store) -> None:
        self.store = store

    def create(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        access_expiry: datetime,
        refresh_expiry: datetime,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        session = self.store.create_session(
            user_id,
            access_token,
            refresh_token,
            access_expiry,
            refresh_expiry,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    def find_active_by_access_token(self, token: str, user_id: str) -> Optional[Session]:
        return self.store.find_session_by_access_token(token, user_id, utcnow())

    def find_active_by_refresh_token(self, token: str, user_id: str) -> Optional[Session]:
        return self.store.find_session_by_refresh_token(token, user_id, utcnow())

    def touch_activity(self, session_id: str) -> None:
        # activity tracking never fails the request it rides on
        try:
            self.store.touch_session(session_id, utcnow())
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def rotate_access_token(
        self, session_id: str, new_token: str, new_expiry: datetime
    ) -> Optional[Session]:
        return self.store.rotate_session_token(session_id, new_token, new_expiry, utcnow())

    def revoke(self, session_id: str, owner_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, owner_id)
        if revoked:
            logger.info("session_revoked", session_id=session_id, user_id=owner_id)
        return revoked

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    def list_active_for_user(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id, utcnow())

    def delete_expired(self) -> int:
        return self.store.delete_expired_sessions(utcnow())
