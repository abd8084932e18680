from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

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


class MemoryStore:
    """In-process backing store for development and tests.

    Every read returns a copy so callers never hold a live reference to the
    stored record; state only changes through the methods below, each of
    which runs under ``_data_lock``.
    """

    def __init__(self, fs_root: str = "/tmp/staykey") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so revoke_token_chain can call back into locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
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
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = user
            self._persist_state()
            return replace(user, roles=list(user.roles))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, roles=list(user.roles)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user, roles=list(user.roles)) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return replace(user, roles=list(user.roles))

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh records
    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        with self._data_lock:
            self._insert_refresh_record(record)
            self._persist_state()
            return replace(record)

    def _insert_refresh_record(self, record: RefreshRecord) -> None:
        if record.id in self.refresh_records:
            raise ConstraintViolation("refresh record id exists", {"id": record.id})
        if any(r.token_hash == record.token_hash for r in self.refresh_records.values()):
            raise ConstraintViolation(
                "refresh token hash exists", {"field": "token_hash"}
            )
        if record.user_id not in self.users:
            raise ConstraintViolation(
                "user not found for refresh record", {"user_id": record.user_id}
            )
        self.refresh_records[record.id] = replace(record)

    def get_refresh_record(self, record_id: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_records.get(record_id)
            return replace(record) if record else None

    def get_refresh_record_by_hash(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.refresh_records.values() if r.token_hash == token_hash),
                None,
            )
            return replace(record) if record else None

    def find_refresh_record(
        self, token_hash: str, user_id: str, jwt_id: str
    ) -> Optional[RefreshRecord]:
        """Match on all three of value digest, owner and paired access jti."""
        with self._data_lock:
            for record in self.refresh_records.values():
                if (
                    record.token_hash == token_hash
                    and record.user_id == user_id
                    and record.jwt_id == jwt_id
                ):
                    return replace(record)
            return None

    def rotate_refresh_record(
        self,
        old_id: str,
        new_record: RefreshRecord,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
    ) -> RefreshRecord:
        with self._data_lock:
            old = self.refresh_records.get(old_id)
            if old is None or old.is_revoked:
                raise ConcurrencyConflict(old_id)
            self._insert_refresh_record(new_record)
            old.is_revoked = True
            old.revoked_at = revoked_at
            old.revoked_by_ip = revoked_by_ip
            old.revoked_reason = REASON_ROTATED
            old.replaced_by = new_record.id
            self._persist_state()
            return replace(new_record)

    def revoke_refresh_record(
        self,
        record_id: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
    ) -> bool:
        """Flip one record to revoked. False when it was already revoked."""
        with self._data_lock:
            record = self.refresh_records.get(record_id)
            if record is None or record.is_revoked:
                return False
            self._mark_revoked(record, revoked_at, revoked_by_ip, reason)
            self._persist_state()
            return True

    def revoke_user_refresh_records(
        self,
        user_id: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
    ) -> List[RefreshRecord]:
        with self._data_lock:
            revoked: List[RefreshRecord] = []
            for record in self.refresh_records.values():
                if record.user_id == user_id and not record.is_revoked:
                    self._mark_revoked(record, revoked_at, revoked_by_ip, reason)
                    revoked.append(replace(record))
            if revoked:
                self._persist_state()
            return revoked

    def revoke_token_chain(
        self,
        record_id: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
        reason: str,
    ) -> List[RefreshRecord]:
        """Revoke every still-active record reachable from ``record_id``."""
        with self._data_lock:
            revoked: List[RefreshRecord] = []
            for link in self.get_token_chain(record_id):
                record = self.refresh_records[link.id]
                if not record.is_revoked:
                    self._mark_revoked(record, revoked_at, revoked_by_ip, reason)
                    revoked.append(replace(record))
            if revoked:
                self._persist_state()
            return revoked

    def get_token_chain(self, record_id: str) -> List[RefreshRecord]:
        with self._data_lock:
            chain: List[RefreshRecord] = []
            seen: set[str] = set()
            current = self.refresh_records.get(record_id)
            while current is not None and current.id not in seen:
                seen.add(current.id)
                chain.append(replace(current))
                current = (
                    self.refresh_records.get(current.replaced_by)
                    if current.replaced_by
                    else None
                )
            return chain

    def list_active_refresh_records(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshRecord]:
        now = now or utcnow()
        with self._data_lock:
            active = [
                replace(r)
                for r in self.refresh_records.values()
                if r.user_id == user_id and not r.is_revoked and r.expires_at > now
            ]
        return sorted(active, key=lambda r: r.issued_at, reverse=True)

    @staticmethod
    def _mark_revoked(
        record: RefreshRecord, revoked_at: datetime, revoked_by_ip: str, reason: str
    ) -> None:
        record.is_revoked = True
        record.revoked_at = revoked_at
        record.revoked_by_ip = revoked_by_ip
        record.revoked_reason = reason

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.security_events.append(replace(event))
            self._persist_state()
            return event

    def list_security_events(
        self, user_id: str, *, limit: int = 100
    ) -> List[SecurityEvent]:
        with self._data_lock:
            events = [replace(e) for e in self.security_events if e.user_id == user_id]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    # persistence helpers
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "is_admin": user.is_admin,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "roles": list(user.roles),
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            display_name=data.get("display_name"),
            is_admin=data.get("is_admin", False),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            roles=list(data.get("roles") or []),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_refresh_record(self, record: RefreshRecord) -> dict:
        return {
            "id": record.id,
            "token_hash": record.token_hash,
            "jwt_id": record.jwt_id,
            "user_id": record.user_id,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_by_ip": record.created_by_ip,
            "created_by_user_agent": record.created_by_user_agent,
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "revoked_by_ip": record.revoked_by_ip,
            "revoked_reason": record.revoked_reason,
            "replaced_by": record.replaced_by,
        }

    def _deserialize_refresh_record(self, data: dict) -> RefreshRecord:
        return RefreshRecord(
            id=data["id"],
            token_hash=data["token_hash"],
            jwt_id=data["jwt_id"],
            user_id=data["user_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_by_ip=data.get("created_by_ip", ""),
            created_by_user_agent=data.get("created_by_user_agent"),
            is_revoked=data.get("is_revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_by_ip=data.get("revoked_by_ip"),
            revoked_reason=data.get("revoked_reason"),
            replaced_by=data.get("replaced_by"),
        )

    def _serialize_security_event(self, event: SecurityEvent) -> dict:
        return {
            "id": event.id,
            "user_id": event.user_id,
            "event_type": SecurityEventType(event.event_type).value,
            "ip_addr": event.ip_addr,
            "created_at": self._serialize_datetime(event.created_at),
            "token_id": event.token_id,
            "user_agent": event.user_agent,
            "detail": event.detail,
        }

    def _deserialize_security_event(self, data: dict) -> SecurityEvent:
        return SecurityEvent(
            id=data["id"],
            user_id=data["user_id"],
            event_type=SecurityEventType(data["event_type"]),
            ip_addr=data.get("ip_addr", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
            token_id=data.get("token_id"),
            user_agent=data.get("user_agent"),
            detail=data.get("detail"),
        )

    def _persist_state(self) -> None:
        state: Dict[str, Any] = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_records": [
                self._serialize_refresh_record(r) for r in self.refresh_records.values()
            ],
            "security_events": [
                self._serialize_security_event(e) for e in self.security_events
            ],
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
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_records = {
            r["id"]: self._deserialize_refresh_record(r)
            for r in data.get("refresh_records", [])
        }
        self.security_events = [
            self._deserialize_security_event(e)
            for e in data.get("security_events", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            refresh_records=len(self.refresh_records),
        )
        return True
