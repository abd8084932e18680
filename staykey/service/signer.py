from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from staykey.logging import get_logger
from staykey.service.errors import (
    AlgorithmMismatchError,
    ClaimMismatchError,
    ExpiredCredentialError,
    InvalidSignatureError,
    MalformedTokenError,
)

logger = get_logger(__name__)

ALGORITHM = "HS256"

# Claims every access token must carry to be considered well-formed.
_REQUIRED_CLAIMS = ("sub", "jti", "iat", "exp", "iss", "aud")


@dataclass(frozen=True)
class AccessClaims:
    """Decoded payload of an access token."""

    user_id: str
    email: str
    name: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str
    is_admin: bool = False
    roles: tuple[str, ...] = field(default_factory=tuple)
    given_name: Optional[str] = None
    family_name: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessClaims":
        roles = payload.get("role") or []
        if isinstance(roles, str):
            roles = [roles]
        aud = payload["aud"]
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        return cls(
            user_id=str(payload["sub"]),
            email=payload.get("email") or "",
            name=payload.get("name") or "",
            jti=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            issuer=str(payload["iss"]),
            audience=str(aud),
            is_admin=bool(payload.get("IsAdmin", False)),
            roles=tuple(str(r) for r in roles),
            given_name=payload.get("given_name"),
            family_name=payload.get("family_name"),
        )


@dataclass(frozen=True)
class SignedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class CredentialSigner:
    """HS256 signing and verification of access tokens.

    The key, issuer, audience and leeway are fixed at construction; a signer
    never reads configuration after that.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @staticmethod
    def _encode_json(data: dict[str, Any]) -> bytes:
        return json.dumps(data, separators=(",", ":"), sort_keys=True).encode()

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(
        self,
        claims: dict[str, Any],
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> SignedToken:
        """Sign ``claims`` with a fresh jti and an expiry ``ttl`` from ``now``.

        ``iat`` and ``exp`` are whole epoch seconds, so the returned
        timestamps are truncated to the second as well.
        """

        issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        expires_at = issued_at + ttl
        jti = str(uuid.uuid4())
        payload = {
            **claims,
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        header_enc = self._encode_segment(
            self._encode_json({"alg": ALGORITHM, "typ": "JWT"})
        )
        payload_enc = self._encode_segment(self._encode_json(payload))
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._signature(signing_input)}"
        return SignedToken(
            token=token, jti=jti, issued_at=issued_at, expires_at=expires_at
        )

    def verify(
        self,
        token: str,
        *,
        validate_lifetime: bool = True,
        now: Optional[datetime] = None,
    ) -> AccessClaims:
        """Return the claims of ``token`` or raise a ``CredentialError``.

        Checks run in a fixed order: structure, header algorithm, signature,
        issuer and audience, then lifetime (unless ``validate_lifetime`` is
        False, which the refresh path uses to read an expired token).
        """

        if not token or not isinstance(token, str):
            raise MalformedTokenError("token missing")
        if not token.isascii():
            raise MalformedTokenError("token is not ascii")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("token header undecodable")
        if not isinstance(header, dict):
            raise MalformedTokenError("token header undecodable")
        # Algorithm is pinned before the signature is looked at.
        if header.get("alg") != ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise AlgorithmMismatchError("unexpected signing algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("token payload undecodable")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload undecodable")
        missing = [name for name in _REQUIRED_CLAIMS if payload.get(name) in (None, "")]
        if missing:
            raise MalformedTokenError("token missing claims", detail={"missing": missing})
        try:
            exp_ts = int(payload["exp"])
            int(payload["iat"])
        except (TypeError, ValueError):
            raise MalformedTokenError("token timestamps malformed")

        if payload.get("iss") != self.issuer:
            raise ClaimMismatchError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise ClaimMismatchError("audience mismatch")

        if validate_lifetime:
            current = now or datetime.now(timezone.utc)
            if current.timestamp() >= exp_ts + self.leeway.total_seconds():
                raise ExpiredCredentialError("token expired")

        return AccessClaims.from_payload(payload)
