from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from staykey.api.schemas import (
    ActiveTokenListResponse,
    ActiveTokenResponse,
    AdminRevokeRequest,
    ClaimsResponse,
    Envelope,
    LoginRequest,
    RevokeResponse,
    SecurityEventListResponse,
    SecurityEventResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TokenRevokeRequest,
)
from staykey.logging import get_logger
from staykey.service.auth import DEFAULT_CLIENT_IP, RequestContext, TokenPair
from staykey.service.errors import ForbiddenError, MalformedTokenError, NotFoundError
from staykey.service.runtime import get_runtime
from staykey.service.signer import AccessClaims
from staykey.storage.models import REASON_REVOKE_ALL

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return DEFAULT_CLIENT_IP


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


async def get_user(authorization: Optional[str] = Header(None)) -> AccessClaims:
    token = _extract_bearer(authorization)
    if not token:
        raise MalformedTokenError("bearer token missing")
    runtime = get_runtime()
    return await runtime.auth.validate_access_token(token)


async def get_admin_user(
    principal: AccessClaims = Depends(get_user),
) -> AccessClaims:
    if not (principal.is_admin or "admin" in principal.roles):
        raise ForbiddenError("admin access required")
    return principal


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        user_id=pair.user_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_token_expires_at=pair.access_token_expires_at,
        refresh_token_expires_at=pair.refresh_token_expires_at,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password and issue a token pair.

    Raises:
        401: If credentials are invalid or the account is disabled
    """
    runtime = get_runtime()
    user, pair = await runtime.auth.login(
        body.email, body.password, context=_request_context(request)
    )
    if not user or not pair:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Exchange a refresh token and its (possibly expired) access token for a new pair.

    The presented refresh token is single-use: it is revoked as part of the
    exchange and any later presentation is refused.
    """
    runtime = get_runtime()
    pair = await runtime.auth.refresh_tokens(
        body.refresh_token, body.access_token, context=_request_context(request)
    )
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke_token(
    body: TokenRevokeRequest,
    request: Request,
    principal: AccessClaims = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_token(
        body.refresh_token,
        context=_request_context(request),
        owner_id=principal.user_id,
    )
    if not revoked:
        raise NotFoundError("refresh token not found")
    return Envelope(status="ok", data=RevokeResponse(revoked=True))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: TokenRevokeRequest, request: Request):
    """Revoke the supplied refresh token. Unknown tokens are not an error."""
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_token(
        body.refresh_token, context=_request_context(request)
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_all_user_tokens(
        principal.user_id, context=_request_context(request)
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AccessClaims = Depends(get_user)):
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            user_id=principal.user_id,
            email=principal.email,
            name=principal.name,
            is_admin=principal.is_admin,
            roles=list(principal.roles),
            given_name=principal.given_name,
            family_name=principal.family_name,
            jti=principal.jti,
            issued_at=principal.issued_at,
            expires_at=principal.expires_at,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AccessClaims = Depends(get_user)):
    """List the caller's logged-in devices (active refresh tokens)."""
    runtime = get_runtime()
    records = runtime.auth.list_active_tokens(principal.user_id)
    items = [
        ActiveTokenResponse(
            id=record.id,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            created_by_ip=record.created_by_ip,
            created_by_user_agent=record.created_by_user_agent,
        )
        for record in records
    ]
    return Envelope(status="ok", data=ActiveTokenListResponse(items=items))


@router.post(
    "/admin/users/{user_id}/revoke_tokens", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_tokens(
    request: Request,
    user_id: str = Path(..., max_length=128),
    body: Optional[AdminRevokeRequest] = None,
    principal: AccessClaims = Depends(get_admin_user),
):
    runtime = get_runtime()
    reason = (body.reason if body and body.reason else None) or REASON_REVOKE_ALL
    revoked = await runtime.auth.revoke_all_user_tokens(
        user_id, context=_request_context(request), reason=reason
    )
    logger.info(
        "admin_revoked_user_tokens", admin_id=principal.user_id, user_id=user_id
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.get(
    "/admin/users/{user_id}/security_events", response_model=Envelope, tags=["admin"]
)
async def admin_security_events(
    user_id: str = Path(..., max_length=128),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    principal: AccessClaims = Depends(get_admin_user),
):
    runtime = get_runtime()
    events = runtime.auth.list_security_events(user_id, limit=limit)
    items = [
        SecurityEventResponse(
            id=event.id,
            user_id=event.user_id,
            event_type=event.event_type.value,
            ip_addr=event.ip_addr,
            token_id=event.token_id,
            user_agent=event.user_agent,
            detail=event.detail,
            created_at=event.created_at,
        )
        for event in events
    ]
    return Envelope(status="ok", data=SecurityEventListResponse(items=items))
