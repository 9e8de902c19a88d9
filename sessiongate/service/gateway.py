from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.errors import (
    AccountInactive,
    AuthenticationError,
    BadRequestError,
    ServiceError,
    SessionInvalidated,
    TenantAccessForbidden,
    TenantNotFound,
    TokenExpired,
    Unauthenticated,
)
from sessiongate.service.ledger import SessionLedger
from sessiongate.service.providers import ProviderRegistry
from sessiongate.service.tokens import MintedToken, TokenClaims, TokenIssuer
from sessiongate.storage.models import (
    CLIENT_CLASS_MOBILE,
    CLIENT_CLASS_PC,
    CLIENT_CLASS_WECHAT,
    LoginSession,
    Tenant,
    User,
)

logger = get_logger(__name__)

CHALLENGE_MISSING = "Bearer"
CHALLENGE_INVALID = 'Bearer error="invalid_token"'

_MOBILE_UA = re.compile(
    r"android|iphone|ipod|ipad|windows phone|iemobile|blackberry|bb10|"
    r"opera mini|opera mobi|webos|mobile|harmonyos",
    re.IGNORECASE,
)


def infer_client_class(user_agent: Optional[str]) -> str:
    """Map a User-Agent header onto PC, Mobile or MicroMessenger."""
    if not user_agent or not _MOBILE_UA.search(user_agent):
        return CLIENT_CLASS_PC
    if "micromessenger" in user_agent.lower():
        return CLIENT_CLASS_WECHAT
    return CLIENT_CLASS_MOBILE


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token after a Bearer scheme, or None when no bearer was sent."""
    if not authorization:
        return None
    value = authorization.strip()
    if value[:6].lower() != "bearer":
        return None
    return value[6:].strip()


class GatewayStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    """Principal established for one request."""

    user: User
    tenant: Tenant
    claims: TokenClaims

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def tenant_id(self) -> str:
        return self.tenant.id


@dataclass
class FilterOutcome:
    context: Optional[AuthContext] = None
    challenge: Optional[str] = None
    error: Optional[Exception] = None


@dataclass
class IssuedToken:
    token: MintedToken
    user: User
    tenant: Tenant
    session: Optional[LoginSession] = None

    @property
    def access_token(self) -> str:
        return self.token.raw

    def jwt_body(self) -> dict:
        return {
            "access_token": self.token.raw,
            "refresh": self.token.claims.refresh,
            "expires": self.token.claims.expires,
        }


@dataclass
class RevocationResult:
    user_id: str
    tenant: Tenant
    client_class: str
    revoked: int


class AuthGateway:
    """Issues, validates, refreshes and revokes session-bound tokens.

    A token is accepted only when its signature verifies, it has not
    expired, its tenant and principal still exist, and a live login-session
    row carries its notBefore. Issuing a tracked token first fails every
    live row for the same (tenant, principal, client class).
    """

    def __init__(
        self,
        store: GatewayStore,
        settings: Settings,
        *,
        issuer: TokenIssuer,
        ledger: SessionLedger,
        providers: ProviderRegistry,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.ledger = ledger
        self.providers = providers

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def _issue(
        self, tenant: Tenant, user: User, *, user_agent: Optional[str], tracked: bool = True
    ) -> IssuedToken:
        minted = self.issuer.mint(user, tenant)
        if not tracked:
            return IssuedToken(token=minted, user=user, tenant=tenant)
        client_class = infer_client_class(user_agent)
        record = self.ledger.supersede(
            tenant.id, user, client_class, minted.claims.not_before
        )
        return IssuedToken(token=minted, user=user, tenant=tenant, session=record)

    async def issue_new_token(
        self,
        tenant_id: Optional[str],
        provider: Optional[str],
        credential: Optional[str],
        *,
        user_agent: Optional[str] = None,
        session_mode: bool = True,
    ) -> IssuedToken:
        if not provider or not tenant_id or not credential:
            raise BadRequestError(
                "Some of the required query parameters 'provider', 'appid', 'token', are missing."
            )
        if (
            tenant_id == self.settings.root_tenant_id
            and not self.settings.clients_can_access_root_tenant
        ):
            raise TenantAccessForbidden(
                f"Can't authenticate user with app '{tenant_id}' using provider '{provider}'. "
                "Reason: clients aren't allowed to access root app."
            )
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFound("User belongs to an app that does not exist.")

        exchanger = self.providers.get(provider)
        try:
            user = await exchanger.exchange_credential(tenant, credential)
        except ServiceError as exc:
            logger.info(
                "provider_exchange_failed",
                tenant_id=tenant.id,
                provider=provider,
                error_type=type(exc).__name__,
                message=exc.message,
            )
            raise
        if user is None or not user.active:
            raise AccountInactive(
                f"Failed to authenticate user with '{provider}'. Check if user is active."
            )

        issued = self._issue(tenant, user, user_agent=user_agent, tracked=session_mode)
        logger.info(
            "token_issued",
            tenant_id=tenant.id,
            user_id=user.id,
            provider=provider.lower(),
            tracked=session_mode,
            client_class=issued.session.client_class if issued.session else None,
        )
        return issued

    def validate_token(self, raw_token: Optional[str]) -> AuthContext:
        """Full check of a presented token; raises the specific rejection reason."""
        claims = self.issuer.parse(raw_token or "")
        leeway_ms = self.settings.clock_skew_seconds * 1000
        if claims.is_expired(self._now_ms(), leeway_ms=leeway_ms):
            raise TokenExpired("token has expired")
        tenant = self.store.get_tenant(claims.tenant_id)
        if tenant is None:
            raise TenantNotFound("token tenant does not exist")
        user = self.store.get_user(tenant.id, claims.subject)
        if user is None:
            # Tenant-as-subject tokens are not accepted
            raise AuthenticationError("token subject is not a known principal")
        if not user.active:
            raise AuthenticationError("principal is inactive")
        if not self.ledger.is_live(tenant.id, user.id, claims.not_before):
            raise SessionInvalidated("session has been superseded or revoked")
        return AuthContext(user=user, tenant=tenant, claims=claims)

    async def refresh_token(
        self, raw_token: Optional[str], *, user_agent: Optional[str] = None
    ) -> IssuedToken:
        try:
            context = self.validate_token(raw_token)
        except ServiceError as exc:
            logger.info("token_refresh_rejected", reason=type(exc).__name__)
            raise Unauthenticated(
                "User must reauthenticate.",
                headers={"WWW-Authenticate": CHALLENGE_INVALID},
            ) from exc
        issued = self._issue(context.tenant, context.user, user_agent=user_agent)
        logger.info(
            "token_refreshed",
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            client_class=issued.session.client_class,
        )
        return issued

    async def revoke_all_sessions(
        self, raw_token: Optional[str], *, user_agent: Optional[str] = None
    ) -> RevocationResult:
        try:
            context = self.validate_token(raw_token)
        except ServiceError as exc:
            logger.info("token_revoke_rejected", reason=type(exc).__name__)
            raise Unauthenticated(
                "Invalid or expired token.",
                headers={"WWW-Authenticate": CHALLENGE_MISSING},
            ) from exc
        # Scoped to the caller's client class; other devices stay signed in
        client_class = infer_client_class(user_agent)
        live = self.ledger.find_live_sessions(
            context.tenant_id, context.user_id, client_class=client_class
        )
        revoked = self.ledger.invalidate_sessions(live)
        logger.info(
            "sessions_revoked",
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            client_class=client_class,
            revoked=revoked,
        )
        return RevocationResult(
            user_id=context.user_id,
            tenant=context.tenant,
            client_class=client_class,
            revoked=revoked,
        )

    def authenticate_request(self, authorization: Optional[str]) -> FilterOutcome:
        """Resolve the principal for an ordinary request without raising on bad tokens."""
        raw = extract_bearer(authorization)
        if raw is None:
            return FilterOutcome(challenge=CHALLENGE_MISSING)
        try:
            context = self.validate_token(raw)
        except ServiceError as exc:
            logger.debug("token_rejected", reason=type(exc).__name__, message=exc.message)
            return FilterOutcome(challenge=CHALLENGE_INVALID, error=exc)
        return FilterOutcome(context=context)
