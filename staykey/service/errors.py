from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TokenErrorKind(str, Enum):
    """Why a credential was refused.

    Used for logging and alerting only; clients see a uniform 401.
    """

    INVALID_SIGNATURE = "invalid_signature"
    ALGORITHM_MISMATCH = "algorithm_mismatch"
    MALFORMED_TOKEN = "malformed_token"
    CLAIM_MISMATCH = "claim_mismatch"
    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED_CREDENTIAL = "expired_credential"
    UNKNOWN_TOKEN = "unknown_token"
    REVOKED_TOKEN = "revoked_token"
    EXPIRED_TOKEN = "expired_token"
    CONCURRENCY_CONFLICT = "concurrency_conflict"


class CredentialError(AuthenticationError):
    """A presented access or refresh credential was refused."""

    kind: TokenErrorKind = TokenErrorKind.INVALID_CREDENTIAL

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[TokenErrorKind] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        if kind is not None:
            self.kind = kind


class InvalidCredentialError(CredentialError):
    """Bad signature, algorithm or structure. Never retried."""
    kind = TokenErrorKind.INVALID_CREDENTIAL


class InvalidSignatureError(InvalidCredentialError):
    kind = TokenErrorKind.INVALID_SIGNATURE


class AlgorithmMismatchError(InvalidCredentialError):
    kind = TokenErrorKind.ALGORITHM_MISMATCH


class MalformedTokenError(InvalidCredentialError):
    kind = TokenErrorKind.MALFORMED_TOKEN


class ClaimMismatchError(InvalidCredentialError):
    """Issuer or audience does not match this deployment."""
    kind = TokenErrorKind.CLAIM_MISMATCH


class ExpiredCredentialError(CredentialError):
    """Access token is past ``exp``; the client should refresh."""
    kind = TokenErrorKind.EXPIRED_CREDENTIAL


class UnknownTokenError(CredentialError):
    """No refresh record matches the presented (value, user, jti) triple."""
    kind = TokenErrorKind.UNKNOWN_TOKEN


class RevokedTokenError(CredentialError):
    """Refresh token was rotated or revoked; a replay is a theft signal."""
    kind = TokenErrorKind.REVOKED_TOKEN


class ConcurrencyConflictError(RevokedTokenError):
    """Lost a rotation race for the same refresh value. Do not retry."""
    kind = TokenErrorKind.CONCURRENCY_CONFLICT


class ExpiredTokenError(CredentialError):
    """Refresh record is past its own ``expires_at``."""
    kind = TokenErrorKind.EXPIRED_TOKEN


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "TokenErrorKind",
    "CredentialError",
    "InvalidCredentialError",
    "InvalidSignatureError",
    "AlgorithmMismatchError",
    "MalformedTokenError",
    "ClaimMismatchError",
    "ExpiredCredentialError",
    "UnknownTokenError",
    "RevokedTokenError",
    "ConcurrencyConflictError",
    "ExpiredTokenError",
]
