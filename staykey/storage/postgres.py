from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from staykey.logging import get_logger
from staykey.storage.errors import ConcurrencyConflict, ConstraintViolation
from staykey.storage.models import (
    REASON_ROTATED,
    RefreshRecord,
    SecurityEvent,
    SecurityEventType,
    User,
    utcnow,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        first_name TEXT,
        last_name TEXT,
        roles TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL,
        jwt_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_by_ip TEXT NOT NULL,
        created_by_user_agent TEXT,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_by_ip TEXT,
        revoked_reason TEXT,
        replaced_by TEXT REFERENCES refresh_token(id)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_hash_idx ON refresh_token (token_hash)",
    """
    CREATE INDEX IF NOT EXISTS refresh_token_user_active_idx
        ON refresh_token (user_id) WHERE is_revoked = FALSE
    """,
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        ip_addr TEXT NOT NULL,
        token_id TEXT,
        user_agent TEXT,
        detail TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS security_event_user_idx
        ON security_event (user_id, created_at DESC)
    """,
)

_REFRESH_COLUMNS = (
    "id, token_hash, jwt_id, user_id, issued_at, expires_at, created_by_ip, "
    "created_by_user_agent, is_revoked, revoked_at, revoked_by_ip, "
    "revoked_reason, replaced_by"
)


class PostgresStore:
    """Postgres-backed store for users, refresh records and security events."""

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
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name"),
            is_admin=bool(row.get("is_admin", False)),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            roles=list(row.get("roles") or []),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_record(row: dict) -> RefreshRecord:
        return RefreshRecord(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            jwt_id=row["jwt_id"],
            user_id=str(row["user_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            created_by_ip=row.get("created_by_ip") or "",
            created_by_user_agent=row.get("created_by_user_agent"),
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_by_ip=row.get("revoked_by_ip"),
            revoked_reason=row.get("revoked_reason"),
            replaced_by=str(row["replaced_by"]) if row.get("replaced_by") else None,
        )

    @staticmethod
    def _row_to_security_event(row: dict) -> SecurityEvent:
        return SecurityEvent(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            event_type=SecurityEventType(row["event_type"]),
            ip_addr=row.get("ip_addr") or "",
            created_at=row["created_at"],
            token_id=row.get("token_id"),
            user_agent=row.get("user_agent"),
            detail=row.get("detail"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        is_admin: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email,
            display_name=display_name,
            is_admin=is_admin,
            first_name=first_name,
            last_name=last_name,
            roles=list(roles or []),
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, is_admin, first_name, last_name, roles, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.display_name,
                        user.is_admin,
                        user.first_name,
                        user.last_name,
                        user.roles,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh records
    @staticmethod
    def _insert_refresh_record(conn: Any, record: RefreshRecord) -> None:
        conn.execute(
            f"""
            INSERT INTO refresh_token ({_REFRESH_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.token_hash,
                record.jwt_id,
                record.user_id,
                record.issued_at,
                record.expires_at,
                record.created_by_ip,
                record.created_by_user_agent,
                record.is_revoked,
                record.revoked_at,
                record.revoked_by_ip,
                record.revoked_reason,
                record.replaced_by,
            ),
        )

    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh_record(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash exists", {"field": "token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh record", {"user_id": record.user_id}
            )
        return record

    def get_refresh_record(self, record_id: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE id = %s",
                (record_id,),
            ).fetchone()
        return self._row_to_refresh_record(row) if row else None

    def get_refresh_record_by_hash(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._row_to_refresh_record(row) if row else None

    def find_refresh_record(
        self, token_hash: str, user_id: str, jwt_id: str
    ) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_REFRESH_COLUMNS} FROM refresh_token
                WHERE token_hash = %s AND user_id = %s AND jwt_id = %s
                """,
                (token_hash, user_id, jwt_id),
            ).fetchone()
        return self._row_to_refresh_record(row) if row else None

    def rotate_refresh_record(
        self,
        old_id: str,
        new_record: RefreshRecord,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
    ) -> RefreshRecord:
        """Revoke ``old_id`` and insert ``new_record`` in one transaction.

        The ``is_revoked = FALSE`` predicate is the compare-and-swap: when a
        concurrent rotation already flipped the row, no row comes back and
        the transaction is rolled back before the new record is visible.
        """
        try:
            with self._connect() as conn, conn.transaction():
                claimed = conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, revoked_reason = %s
                    WHERE id = %s AND is_revoked = FALSE
                    RETURNING id
                    """,
                    (revoked_at, revoked_by_ip, REASON_ROTATED, old_id),
                ).fetchone()
                if not claimed:
                    raise ConcurrencyConflict(old_id)
                self._insert_refresh_record(conn, new_record)
                conn.execute(
                    "UPDATE refresh_token SET replaced_by = %s WHERE id = %s",
                    (new_record.id, old_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash exists", {"field": "token_hash"}
            )
        return new_record

    def revoke_refresh_record(
        self,
        record_id: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, revoked_reason = %s
                WHERE id = %s AND is_revoked = FALSE
                RETURNING id
                """,
                (revoked_at, revoked_by_ip, reason, record_id),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_records(
        self,
        user_id: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
    ) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, revoked_reason = %s
                WHERE user_id = %s AND is_revoked = FALSE
                RETURNING {_REFRESH_COLUMNS}
                """,
                (revoked_at, revoked_by_ip, reason, user_id),
            ).fetchall()
        return [self._row_to_refresh_record(row) for row in rows]

    def revoke_token_chain(
        self,
        record_id: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
    ) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                WITH RECURSIVE chain(id, replaced_by) AS (
                    SELECT id, replaced_by FROM refresh_token WHERE id = %s
                    UNION
                    SELECT r.id, r.replaced_by FROM refresh_token r
                    JOIN chain c ON r.id = c.replaced_by
                )
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, revoked_by_ip = %s, revoked_reason = %s
                WHERE id IN (SELECT id FROM chain) AND is_revoked = FALSE
                RETURNING {_REFRESH_COLUMNS}
                """,
                (record_id, revoked_at, revoked_by_ip, reason),
            ).fetchall()
        return [self._row_to_refresh_record(row) for row in rows]

    def get_token_chain(self, record_id: str) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                WITH RECURSIVE chain AS (
                    SELECT {_REFRESH_COLUMNS}, 0 AS depth FROM refresh_token WHERE id = %s
                    UNION ALL
                    SELECT r.id, r.token_hash, r.jwt_id, r.user_id, r.issued_at, r.expires_at,
                           r.created_by_ip, r.created_by_user_agent, r.is_revoked, r.revoked_at,
                           r.revoked_by_ip, r.revoked_reason, r.replaced_by, c.depth + 1
                    FROM refresh_token r
                    JOIN chain c ON r.id = c.replaced_by
                )
                SELECT * FROM chain ORDER BY depth
                """,
                (record_id,),
            ).fetchall()
        return [self._row_to_refresh_record(row) for row in rows]

    def list_active_refresh_records(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_REFRESH_COLUMNS} FROM refresh_token
                WHERE user_id = %s AND is_revoked = FALSE AND expires_at > %s
                ORDER BY issued_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._row_to_refresh_record(row) for row in rows]

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, user_id, event_type, ip_addr, token_id, user_agent, detail, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    SecurityEventType(event.event_type).value,
                    event.ip_addr,
                    event.token_id,
                    event.user_agent,
                    event.detail,
                    event.created_at,
                ),
            )
        return event

    def list_security_events(
        self, user_id: str, *, limit: int = 100
    ) -> List[SecurityEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM security_event WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_security_event(row) for row in rows]
