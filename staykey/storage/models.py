from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityEventType(str, Enum):
    LOGIN = "Login"
    TOKEN_REFRESH = "TokenRefresh"
    TOKEN_REVOCATION = "TokenRevocation"
    ALL_TOKENS_REVOCATION = "AllTokensRevocation"


class RefreshStatus(str, Enum):
    ACTIVE = "active"
    REVOKED_BY_ROTATION = "revoked_by_rotation"
    REVOKED_EXPLICITLY = "revoked_explicitly"
    EXPIRED = "expired"


# Values stored in ``RefreshRecord.revoked_reason``
REASON_ROTATED = "rotated"
REASON_EXPLICIT = "explicit"
REASON_REVOKE_ALL = "revoke_all"
REASON_REUSE_DETECTED = "reuse_detected"


@dataclass
class User:
    id: str
    email: str
    display_name: Optional[str] = None
    is_admin: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return self.display_name or self.email


@dataclass
class RefreshRecord:
    """Persisted state of one refresh token.

    Only the SHA-256 digest of the opaque value is kept. ``replaced_by`` holds
    the id of the record that superseded this one during rotation.
    """

    id: str
    token_hash: str
    jwt_id: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    created_by_ip: str
    created_by_user_agent: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    revoked_reason: Optional[str] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        *,
        token_hash: str,
        jwt_id: str,
        user_id: str,
        issued_at: datetime,
        expires_at: datetime,
        created_by_ip: str,
        created_by_user_agent: Optional[str] = None,
    ) -> "RefreshRecord":
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            jwt_id=jwt_id,
            user_id=user_id,
            issued_at=issued_at,
            expires_at=expires_at,
            created_by_ip=created_by_ip,
            created_by_user_agent=created_by_user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def status(self, now: Optional[datetime] = None) -> RefreshStatus:
        if self.is_revoked:
            if self.revoked_reason == REASON_ROTATED:
                return RefreshStatus.REVOKED_BY_ROTATION
            return RefreshStatus.REVOKED_EXPLICITLY
        if self.is_expired(now):
            return RefreshStatus.EXPIRED
        return RefreshStatus.ACTIVE


@dataclass
class SecurityEvent:
    id: str
    user_id: str
    event_type: SecurityEventType
    ip_addr: str
    created_at: datetime
    token_id: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        event_type: SecurityEventType,
        ip_addr: str,
        *,
        token_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "SecurityEvent":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            event_type=SecurityEventType(event_type),
            ip_addr=ip_addr,
            created_at=created_at or utcnow(),
            token_id=token_id,
            user_agent=user_agent,
            detail=detail,
        )
