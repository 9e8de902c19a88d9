from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from sessiongate.api.schemas import (
    Envelope,
    JWTBody,
    PrincipalResponse,
    TokenRequest,
    TokenResponse,
    UserSnapshot,
)
from sessiongate.logging import get_logger
from sessiongate.service.errors import ServerError
from sessiongate.service.gateway import (
    CHALLENGE_MISSING,
    AuthContext,
    IssuedToken,
    extract_bearer,
)
from sessiongate.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def request_authorization(request: Request) -> Optional[str]:
    """Authorization header, falling back to an ``Authorization`` query parameter."""
    return request.headers.get("Authorization") or request.query_params.get("Authorization")


def get_principal(request: Request) -> AuthContext:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise _http_error(
            "unauthorized",
            "authentication required",
            status_code=401,
            headers={
                "WWW-Authenticate": getattr(request.state, "auth_challenge", None)
                or CHALLENGE_MISSING
            },
        )
    return principal


def _token_response(issued: IssuedToken) -> JSONResponse:
    try:
        body = TokenResponse(
            jwt=JWTBody(**issued.jwt_body()),
            user=UserSnapshot(**issued.user.snapshot()),
        )
    except (TypeError, ValueError) as exc:
        logger.error("token_response_failed", error=str(exc))
        raise ServerError("Bad token.") from exc
    return JSONResponse(
        content=body.model_dump(),
        headers={
            "Authorization": f"Bearer {issued.access_token}",
            "APP_ID": issued.tenant.identifier,
        },
    )


async def issue_token(
    body: TokenRequest,
    runtime: Runtime = Depends(get_runtime),
    user_agent: Optional[str] = Header(None),
):
    """Exchange an identity-provider credential for a session-bound token."""
    issued = await runtime.gateway.issue_new_token(
        body.appid,
        body.provider,
        body.token,
        user_agent=user_agent,
        session_mode=body.session_mode,
    )
    return _token_response(issued)


async def refresh_token(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    user_agent: Optional[str] = Header(None),
):
    """Re-issue a token for the bearer of a still-valid one."""
    raw = extract_bearer(request_authorization(request))
    issued = await runtime.gateway.refresh_token(raw, user_agent=user_agent)
    return _token_response(issued)


async def revoke_tokens(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    user_agent: Optional[str] = Header(None),
):
    """Invalidate every live session of the caller's client class."""
    raw = extract_bearer(request_authorization(request))
    result = await runtime.gateway.revoke_all_sessions(raw, user_agent=user_agent)
    envelope = Envelope(
        status="ok",
        data={
            "message": f"All tokens revoked for user {result.user_id}!",
            "client_class": result.client_class,
            "revoked": result.revoked,
        },
    )
    return JSONResponse(
        content=envelope.model_dump(), headers={"APP_ID": result.tenant.identifier}
    )


def build_auth_router(auth_path: str) -> APIRouter:
    """Mount the token endpoint at the configured path; one handler per verb."""
    auth_router = APIRouter(tags=["auth"])
    auth_router.add_api_route(auth_path, issue_token, methods=["POST"])
    auth_router.add_api_route(auth_path, refresh_token, methods=["GET"])
    auth_router.add_api_route(auth_path, revoke_tokens, methods=["DELETE"])
    return auth_router


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_principal(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user=UserSnapshot(**principal.user.snapshot()),
            tenant_identifier=principal.tenant.identifier,
            not_before=principal.claims.not_before,
            expires=principal.claims.expires,
        ),
    )
