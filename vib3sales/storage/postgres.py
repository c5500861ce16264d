from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vib3sales.logging import get_logger
from vib3sales.storage.errors import ConstraintViolation
from vib3sales.storage.models import (
    CrmLead,
    EmailVerificationToken,
    LeadPriority,
    LeadStatus,
    LoginAttempt,
    PasswordResetToken,
    Session,
    User,
    build_source,
    normalize_email,
    utcnow,
)

_REQUIRED_TABLES = (
    "app_user",
    "auth_session",
    "password_reset_token",
    "email_verification_token",
    "login_attempt",
    "crm_lead",
)

_TOKEN_TABLES = {
    PasswordResetToken: "password_reset_token",
    EmailVerificationToken: "email_verification_token",
}


class PostgresStore:
    """Postgres-backed store for users, sessions, auth tokens and CRM leads."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when sql/schema.sql has not been applied."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql before starting.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row.get("password_hash"),
            sso_id=row.get("sso_id"),
            email_verified=bool(row.get("email_verified")),
            role=row.get("role"),
            focus=row.get("focus"),
            services=row.get("services"),
            topics=row.get("topics"),
            avatar_initial=row.get("avatar_initial"),
            profile_picture=row.get("profile_picture"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login=row.get("last_login"),
        )

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
        profile = profile or {}
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, password_hash, name, sso_id, email_verified,
                        role, focus, services, topics, avatar_initial, profile_picture
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        password_hash,
                        name,
                        sso_id,
                        email_verified,
                        profile.get("role"),
                        profile.get("focus"),
                        profile.get("services"),
                        profile.get("topics"),
                        profile.get("avatar_initial"),
                        profile.get("profile_picture"),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "sso" in constraint:
                raise ConstraintViolation("sso id already linked", {"field": "sso_id"})
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def _get_user_where(self, clause: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {clause} = %s", (value,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", normalize_email(email))

    def get_user_by_sso_id(self, sso_id: str) -> Optional[User]:
        return self._get_user_where("sso_id", sso_id)

    def update_user_profile(self, user_id: str, patch: Dict[str, Any]) -> Optional[User]:
        updates = {k: v for k, v in patch.items() if k in User.PROFILE_FIELDS}
        assignments = [f"{column} = %s" for column in updates]
        assignments.append("updated_at = now()")
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                (*updates.values(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                (user_id,),
            )

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )

    def touch_last_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET last_login = now() WHERE id = %s", (user_id,))

    # sessions
    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token=row["token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            refresh_expires_at=row["refresh_expires_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
        )

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
        sess = Session.new(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, token, refresh_token, expires_at, refresh_expires_at,
                        user_agent, ip_address, created_at, last_activity_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.access_token,
                        sess.refresh_token,
                        sess.expires_at,
                        sess.refresh_expires_at,
                        sess.user_agent,
                        sess.ip_address,
                        sess.created_at,
                        sess.last_activity_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already issued", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM auth_session WHERE id = %s", (session_id,)
                ).fetchone()
        except errors.DataError:
            # not a UUID, so no such session
            return None
        return self._session_from_row(row) if row else None

    def find_session_by_access_token(
        self, token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s AND user_id = %s AND expires_at > %s",
                (token, user_id, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_refresh_token(
        self, token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE refresh_token = %s AND user_id = %s AND refresh_expires_at > %s
                """,
                (token, user_id, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s",
                (at, session_id),
            )

    def rotate_session_token(
        self, session_id: str, access_token: str, expires_at: datetime, at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET token = %s,
                    expires_at = LEAST(%s, refresh_expires_at),
                    last_activity_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (access_token, expires_at, at, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> bool:
        try:
            with self._connect() as conn:
                if user_id is None:
                    cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
                else:
                    cur = conn.execute(
                        "DELETE FROM auth_session WHERE id = %s AND user_id = %s",
                        (session_id, user_id),
                    )
                return cur.rowcount > 0
        except errors.DataError:
            return False

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s AND refresh_expires_at <= %s",
                (now, now),
            )
            return cur.rowcount

    # single-use tokens
    def _insert_token(self, token_cls, user_id: str, token: str, expires_at: datetime):
        table = _TOKEN_TABLES[token_cls]
        record = token_cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            created_at=utcnow(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {table} (id, user_id, token, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, FALSE, %s)
                    """,
                    (record.id, record.user_id, record.token, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return record

    def _consume_token(self, token_cls, token: str, now: datetime):
        table = _TOKEN_TABLES[token_cls]
        # single UPDATE so two concurrent consumers cannot both win
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE {table} SET used = TRUE
                WHERE token = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        return self._token_from_row(token_cls, row) if row else None

    @staticmethod
    def _token_from_row(token_cls, row: Dict[str, Any]):
        return token_cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            used=row["used"],
            created_at=row["created_at"],
        )

    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        return self._insert_token(PasswordResetToken, user_id, token, expires_at)

    def find_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s AND used = FALSE AND expires_at > %s",
                (token, now),
            ).fetchone()
        return self._token_from_row(PasswordResetToken, row) if row else None

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        return self._consume_token(PasswordResetToken, token, now)

    def create_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken:
        return self._insert_token(EmailVerificationToken, user_id, token, expires_at)

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        return self._consume_token(EmailVerificationToken, token, now)

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, email, ip_address, successful, attempted_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (attempt.id, attempt.email, attempt.ip_address, attempt.successful, attempt.attempted_at),
            )
        return attempt

    def list_failed_login_attempts(self, email: str, since: datetime) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt
                WHERE email = %s AND successful = FALSE AND attempted_at >= %s
                ORDER BY attempted_at ASC
                """,
                (normalize_email(email), since),
            ).fetchall()
        return [
            LoginAttempt(
                id=str(row["id"]),
                email=row["email"],
                ip_address=row.get("ip_address"),
                successful=row["successful"],
                attempted_at=row["attempted_at"],
            )
            for row in rows
        ]

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM login_attempt WHERE attempted_at < %s", (cutoff,))
            return cur.rowcount

    # crm leads
    @staticmethod
    def _lead_from_row(row: Dict[str, Any]) -> CrmLead:
        snapshot = row.get("snapshot") or {}
        if isinstance(snapshot, str):
            snapshot = json.loads(snapshot)
        snapshot.setdefault("id", row["source_id"])
        return CrmLead(
            id=row["id"],
            owner_user_id=str(row["owner_user_id"]),
            source=build_source(row["source"], snapshot),
            status=LeadStatus(row["status"]),
            priority=LeadPriority(row["priority"]),
            tags=list(row.get("tags") or []),
            notes=row.get("notes") or "",
            next_follow_up_at=row.get("next_follow_up_at"),
            last_contacted_at=row.get("last_contacted_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_leads(self, owner_user_id: str) -> List[CrmLead]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM crm_lead WHERE owner_user_id = %s", (owner_user_id,)
            ).fetchall()
        return [self._lead_from_row(row) for row in rows]

    def get_lead(self, owner_user_id: str, lead_id: str) -> Optional[CrmLead]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM crm_lead WHERE id = %s AND owner_user_id = %s",
                (lead_id, owner_user_id),
            ).fetchone()
        return self._lead_from_row(row) if row else None

    def find_lead_by_source(
        self, owner_user_id: str, kind: str, source_id: str
    ) -> Optional[CrmLead]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM crm_lead
                WHERE owner_user_id = %s AND source = %s AND source_id = %s
                """,
                (owner_user_id, kind, source_id),
            ).fetchone()
        return self._lead_from_row(row) if row else None

    def insert_lead(self, lead: CrmLead) -> CrmLead:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO crm_lead (
                        id, owner_user_id, source, source_id, snapshot, status, priority,
                        tags, notes, next_follow_up_at, last_contacted_at, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        lead.id,
                        lead.owner_user_id,
                        lead.source.kind,
                        lead.source.source_id,
                        json.dumps(lead.source.data),
                        lead.status.value,
                        lead.priority.value,
                        lead.tags,
                        lead.notes,
                        lead.next_follow_up_at,
                        lead.last_contacted_at,
                        lead.created_at,
                        lead.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("lead already saved for source", {"field": "source"})
        return lead

    def update_lead(self, lead: CrmLead) -> Optional[CrmLead]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE crm_lead
                SET snapshot = %s::jsonb, status = %s, priority = %s, tags = %s, notes = %s,
                    next_follow_up_at = %s, last_contacted_at = %s, updated_at = %s
                WHERE id = %s AND owner_user_id = %s
                RETURNING *
                """,
                (
                    json.dumps(lead.source.data),
                    lead.status.value,
                    lead.priority.value,
                    lead.tags,
                    lead.notes,
                    lead.next_follow_up_at,
                    lead.last_contacted_at,
                    lead.updated_at,
                    lead.id,
                    lead.owner_user_id,
                ),
            ).fetchone()
        return self._lead_from_row(row) if row else None

    def delete_lead(self, owner_user_id: str, lead_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM crm_lead WHERE id = %s AND owner_user_id = %s",
                (lead_id, owner_user_id),
            )
            return cur.rowcount > 0

    def delete_lead_by_source(self, owner_user_id: str, kind: str, source_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM crm_lead WHERE owner_user_id = %s AND source = %s AND source_id = %s",
                (owner_user_id, kind, source_id),
            )
            return cur.rowcount > 0
