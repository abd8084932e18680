from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from staykey.config import ReusePolicy, Settings
from staykey.logging import get_logger
from staykey.service.audit import AuditRecorder
from staykey.service.errors import (
    BadRequestError,
    ConcurrencyConflictError,
    CredentialError,
    ExpiredTokenError,
    InvalidCredentialError,
    MalformedTokenError,
    RevokedTokenError,
    UnknownTokenError,
)
from staykey.service.signer import AccessClaims, CredentialSigner
from staykey.storage.errors import ConcurrencyConflict
from staykey.storage.models import (
    REASON_EXPLICIT,
    REASON_REUSE_DETECTED,
    REASON_REVOKE_ALL,
    RefreshRecord,
    RefreshStatus,
    SecurityEvent,
    SecurityEventType,
    User,
    utcnow,
)
from staykey.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# 64 random bytes, i.e. 512 bits of entropy per refresh value.
REFRESH_TOKEN_BYTES = 64
DEFAULT_CLIENT_IP = "127.0.0.1"


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class TokenStore(Protocol):
    """Persistence operations the credential lifecycle relies on."""

    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord: ...

    def find_refresh_record(
        self, token_hash: str, user_id: str, jwt_id: str
    ) -> Optional[RefreshRecord]: ...

    def get_refresh_record(self, record_id: str) -> Optional[RefreshRecord]: ...

    def get_refresh_record_by_hash(
        self, token_hash: str
    ) -> Optional[RefreshRecord]: ...

    def rotate_refresh_record(
        self,
        old_id: str,
        new_record: RefreshRecord,
        *,
        revoked_at: datetime,
        revoked_by_ip: str,
    ) -> RefreshRecord: ...

    def revoke_refresh_record(
        self, record_id: str, *, revoked_at: datetime, revoked_by_ip: str, reason: str
    ) -> bool: ...

    def revoke_user_refresh_records(
        self, user_id: str, *, revoked_at: datetime, revoked_by_ip: str, reason: str
    ) -> List[RefreshRecord]: ...

    def revoke_token_chain(
        self, record_id: str, *, revoked_at: datetime, revoked_by_ip: str, reason: str
    ) -> List[RefreshRecord]: ...

    def get_token_chain(self, record_id: str) -> List[RefreshRecord]: ...

    def list_active_refresh_records(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshRecord]: ...

    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self, user_id: str, *, limit: int = 100
    ) -> List[SecurityEvent]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...


@dataclass(frozen=True)
class RequestContext:
    """Network origin of the call being served."""

    ip_addr: str = DEFAULT_CLIENT_IP
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    user_id: str
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "user_id": self.user_id,
            "access_token_expires_at": self.access_token_expires_at.isoformat(),
            "refresh_token_expires_at": self.refresh_token_expires_at.isoformat(),
        }


def hash_refresh_token(refresh_token: str) -> str:
    return hashlib.sha256(refresh_token.encode("utf-8", "surrogatepass")).hexdigest()


def _dedupe(roles: Optional[Iterable[str]]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for role in roles or ():
        if role not in seen:
            seen.add(role)
            ordered.append(role)
    return ordered


class AuthService:
    """Issue, rotate, revoke and validate access/refresh credential pairs."""

    def __init__(
        self,
        store: TokenStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        users: Optional[UserDirectory] = None,
        audit: Optional[AuditRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: TokenStore = store
        self.cache = cache
        self.settings = settings
        self.users: UserDirectory = users or store
        self.audit = audit or AuditRecorder(store)
        self.signer = CredentialSigner(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway=settings.clock_skew,
        )
        self._clock = clock or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _generate_refresh_value() -> str:
        return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")

    @staticmethod
    def _build_claims(user: User, roles: List[str]) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "name": user.name,
            "IsAdmin": bool(user.is_admin),
            "role": roles,
        }
        if user.first_name:
            claims["given_name"] = user.first_name
        if user.last_name:
            claims["family_name"] = user.last_name
        return claims

    def _mint_pair(
        self, user: User, roles: List[str], context: RequestContext, now: datetime
    ) -> Tuple[TokenPair, RefreshRecord]:
        """Sign an access token and build, but do not persist, its refresh record."""

        signed = self.signer.sign(
            self._build_claims(user, roles), self.settings.access_token_ttl, now=now
        )
        refresh_value = self._generate_refresh_value()
        record = RefreshRecord.new(
            token_hash=hash_refresh_token(refresh_value),
            jwt_id=signed.jti,
            user_id=user.id,
            issued_at=signed.issued_at,
            expires_at=signed.issued_at + self.settings.refresh_token_ttl,
            created_by_ip=context.ip_addr,
            created_by_user_agent=context.user_agent,
        )
        pair = TokenPair(
            access_token=signed.token,
            refresh_token=refresh_value,
            access_token_expires_at=signed.expires_at,
            refresh_token_expires_at=record.expires_at,
            user_id=user.id,
        )
        return pair, record

    async def issue_tokens(
        self,
        user: User,
        roles: Optional[Iterable[str]] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> TokenPair:
        """Issue a fresh pair at login.

        The refresh record is persisted before the pair is returned; a storage
        failure propagates and no credentials leave this method.
        """

        if user is None:
            raise ValueError("user is required to issue tokens")
        context = context or RequestContext()
        pair, record = self._mint_pair(user, _dedupe(roles), context, self._now())
        self.store.create_refresh_record(record)
        self.logger.info(
            "tokens_issued", user_id=user.id, token_id=record.id, jti=record.jwt_id
        )
        self.audit.record(
            user.id,
            SecurityEventType.LOGIN,
            context.ip_addr,
            token_id=record.id,
            user_agent=context.user_agent,
            detail="user login",
        )
        return pair

    async def refresh_tokens(
        self,
        refresh_token: str,
        access_token: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> TokenPair:
        if not refresh_token or not access_token:
            raise BadRequestError("refresh token and access token are required")
        context = context or RequestContext()
        now = self._now()

        try:
            claims = self.signer.verify(access_token, validate_lifetime=False, now=now)
        except CredentialError as exc:
            self.logger.warning(
                "refresh_access_token_invalid", kind=exc.kind.value, ip_addr=context.ip_addr
            )
            raise InvalidCredentialError("access token invalid") from exc

        record = self.store.find_refresh_record(
            hash_refresh_token(refresh_token), claims.user_id, claims.jti
        )
        if record is None:
            self.logger.warning(
                "refresh_token_unknown", user_id=claims.user_id, jti=claims.jti
            )
            raise UnknownTokenError("refresh token not recognised")

        if record.is_revoked:
            self.logger.warning(
                "refresh_token_replay_detected",
                user_id=record.user_id,
                token_id=record.id,
                revoked_reason=record.revoked_reason,
                ip_addr=context.ip_addr,
            )
            if (
                record.status(now) == RefreshStatus.REVOKED_BY_ROTATION
                and self.settings.refresh_reuse_policy == ReusePolicy.REVOKE_CHAIN
            ):
                await self._revoke_chain(record, context, now)
            raise RevokedTokenError("refresh token revoked")

        if record.is_expired(now):
            self.logger.info(
                "refresh_token_expired", user_id=record.user_id, token_id=record.id
            )
            raise ExpiredTokenError("refresh token expired")

        user = self.users.get_user(claims.user_id)
        if user is None or not user.is_active:
            self.logger.warning("refresh_user_unavailable", user_id=claims.user_id)
            raise InvalidCredentialError("user unavailable")

        pair, new_record = self._mint_pair(user, list(claims.roles), context, now)
        try:
            self.store.rotate_refresh_record(
                record.id,
                new_record,
                revoked_at=now,
                revoked_by_ip=context.ip_addr,
            )
        except ConcurrencyConflict as exc:
            self.logger.warning(
                "refresh_rotation_conflict", user_id=user.id, token_id=record.id
            )
            raise ConcurrencyConflictError("refresh token already used") from exc

        self.logger.info(
            "tokens_refreshed",
            user_id=user.id,
            token_id=new_record.id,
            replaced_token_id=record.id,
        )
        self.audit.record(
            user.id,
            SecurityEventType.TOKEN_REFRESH,
            context.ip_addr,
            token_id=new_record.id,
            user_agent=context.user_agent,
            detail=f"rotated from {record.id}",
        )
        return pair

    async def _revoke_chain(
        self, record: RefreshRecord, context: RequestContext, now: datetime
    ) -> None:
        revoked = self.store.revoke_token_chain(
            record.id,
            revoked_at=now,
            revoked_by_ip=context.ip_addr,
            reason=REASON_REUSE_DETECTED,
        )
        if not revoked:
            return
        await self._denylist_access_tokens(revoked, now)
        self.logger.warning(
            "refresh_chain_revoked",
            user_id=record.user_id,
            token_id=record.id,
            token_count=len(revoked),
        )
        self.audit.record(
            record.user_id,
            SecurityEventType.TOKEN_REVOCATION,
            context.ip_addr,
            token_id=record.id,
            user_agent=context.user_agent,
            detail=f"reuse detected; {len(revoked)} tokens revoked",
        )

    async def revoke_token(
        self,
        refresh_token: str,
        *,
        context: Optional[RequestContext] = None,
        reason: str = REASON_EXPLICIT,
        owner_id: Optional[str] = None,
    ) -> bool:
        """Revoke one refresh token.

        Returns False when the value is blank or unknown and True otherwise,
        including when it was already revoked (no second event is recorded).
        With ``owner_id`` set, a record belonging to someone else counts as
        unknown.
        """

        if not refresh_token:
            return False
        context = context or RequestContext()
        record = self.store.get_refresh_record_by_hash(hash_refresh_token(refresh_token))
        if record is None or (owner_id is not None and record.user_id != owner_id):
            self.logger.warning("revoke_unknown_refresh_token", ip_addr=context.ip_addr)
            return False
        if record.is_revoked:
            self.logger.info(
                "refresh_token_already_revoked",
                user_id=record.user_id,
                token_id=record.id,
            )
            return True

        now = self._now()
        flipped = self.store.revoke_refresh_record(
            record.id, revoked_at=now, revoked_by_ip=context.ip_addr, reason=reason
        )
        if not flipped:
            # A concurrent revoke or rotation got there first.
            return True
        await self._denylist_access_tokens([record], now)
        self.logger.info(
            "refresh_token_revoked", user_id=record.user_id, token_id=record.id
        )
        self.audit.record(
            record.user_id,
            SecurityEventType.TOKEN_REVOCATION,
            context.ip_addr,
            token_id=record.id,
            user_agent=context.user_agent,
            detail=f"revoked: {reason}",
        )
        return True

    async def revoke_all_user_tokens(
        self,
        user_id: str,
        *,
        context: Optional[RequestContext] = None,
        reason: str = REASON_REVOKE_ALL,
    ) -> bool:
        context = context or RequestContext()
        now = self._now()
        revoked = self.store.revoke_user_refresh_records(
            user_id, revoked_at=now, revoked_by_ip=context.ip_addr, reason=reason
        )
        if not revoked:
            self.logger.info("revoke_all_nothing_active", user_id=user_id)
            return True
        await self._denylist_access_tokens(revoked, now)
        self.logger.info(
            "all_refresh_tokens_revoked", user_id=user_id, token_count=len(revoked)
        )
        self.audit.record(
            user_id,
            SecurityEventType.ALL_TOKENS_REVOCATION,
            context.ip_addr,
            user_agent=context.user_agent,
            detail=f"{len(revoked)} tokens revoked: {reason}",
        )
        return True

    async def _denylist_access_tokens(
        self, records: Iterable[RefreshRecord], now: datetime
    ) -> None:
        if not self.cache:
            return
        for record in records:
            access_expires_at = record.issued_at + self.settings.access_token_ttl
            ttl = self.cache.ttl_until(access_expires_at, now=now)
            if ttl <= 0:
                continue
            try:
                await self.cache.denylist_access_token(record.jwt_id, ttl)
            except Exception as exc:
                # Revocation has already been persisted; the denylist is an extra.
                self.logger.warning(
                    "access_token_denylist_failed",
                    token_id=record.id,
                    error=str(exc),
                )

    async def validate_access_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> AccessClaims:
        if not token:
            raise MalformedTokenError("token missing")
        claims = self.signer.verify(token, now=now or self._now())
        if self.cache:
            denylisted = False
            try:
                denylisted = await self.cache.is_access_token_denylisted(claims.jti)
            except Exception as exc:
                self.logger.warning(
                    "access_token_denylist_check_failed", jti=claims.jti, error=str(exc)
                )
            if denylisted:
                raise RevokedTokenError("access token revoked")
        return claims

    def list_active_tokens(self, user_id: str) -> List[RefreshRecord]:
        return self.store.list_active_refresh_records(user_id, now=self._now())

    def get_token_chain(self, record_id: str) -> List[RefreshRecord]:
        return self.store.get_token_chain(record_id)

    def list_security_events(
        self, user_id: str, *, limit: Optional[int] = None
    ) -> List[SecurityEvent]:
        return self.audit.list_events(
            user_id, limit=limit or self.settings.default_audit_limit
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> tuple[Optional[User], Optional[TokenPair]]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            return None, None
        if not user.is_active:
            self.logger.warning("login_inactive_user", user_id=user.id)
            return None, None
        pair = await self.issue_tokens(user, user.roles, context=context)
        return user, pair

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
