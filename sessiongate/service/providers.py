from __future__ import annotations

import hmac
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
from redis.exceptions import RedisError

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.errors import (
    AccountNotFound,
    CredentialExchangeFailed,
    ProviderUnknown,
)
from sessiongate.service.passwords import hash_password, verify_password
from sessiongate.storage.errors import ConstraintViolation
from sessiongate.storage.models import (
    LINK_KIND_LOGIN_ID,
    LINK_KIND_PHONE,
    LinkedIdentity,
    Tenant,
    User,
)
from sessiongate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_PHONE_RE = re.compile(r"^1\d{10}$")

OAUTH_USERINFO_URLS = {
    "google": "https://www.googleapis.com/oauth2/v2/userinfo",
    "github": "https://api.github.com/user",
    "facebook": "https://graph.facebook.com/me?fields=id,name,email",
    "microsoft": "https://graph.microsoft.com/v1.0/me",
    "linkedin": "https://api.linkedin.com/v2/userinfo",
}


class ProviderStore(Protocol):
    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]: ...

    def get_user_by_identifier(self, tenant_id: str, identifier: str) -> Optional[User]: ...

    def create_user(
        self,
        tenant_id: str,
        identifier: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        active: bool = True,
        user_id: Optional[str] = None,
    ) -> User: ...

    def find_linked_identity(
        self, tenant_id: str, kind: str, value: str
    ) -> Optional[LinkedIdentity]: ...

    def consume_verification_code(
        self, tenant_id: str, target: str, code: str, now: datetime
    ) -> bool: ...


class CredentialProvider(Protocol):
    """Turns a provider-specific credential string into a principal of ``tenant``."""

    async def exchange_credential(self, tenant: Tenant, credential: str) -> User: ...


class DirectoryClient(Protocol):
    """Directory (LDAP-style) bind; returns identity attributes or None on failure."""

    async def authenticate(self, username: str, password: str) -> Optional[Dict[str, Any]]: ...


def is_phone(value: str) -> bool:
    return bool(_PHONE_RE.match(value))


class _AccountResolver:
    """Shared principal lookup and auto-registration used by every provider."""

    def __init__(self, store: ProviderStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def may_register(self, identifier: str) -> bool:
        admin = self.settings.admin_identifier
        return self.settings.allow_auto_register_users or bool(admin and identifier == admin)

    def register(
        self,
        tenant: Tenant,
        identifier: str,
        *,
        email: Optional[str],
        name: Optional[str],
        password_hash: Optional[str] = None,
        active: bool = True,
    ) -> User:
        try:
            user = self.store.create_user(
                tenant.id,
                identifier,
                email=email,
                name=name,
                password_hash=password_hash,
                active=active,
            )
        except ConstraintViolation:
            # Lost a race with a concurrent first login for the same identifier
            existing = self.store.get_user_by_identifier(tenant.id, identifier)
            if existing is None:
                raise
            return existing
        logger.info(
            "user_auto_registered", tenant_id=tenant.id, user_id=user.id, active=active
        )
        return user

    def resolve_linked(self, tenant: Tenant, handle: str) -> Optional[User]:
        kind = LINK_KIND_PHONE if is_phone(handle) else LINK_KIND_LOGIN_ID
        link = self.store.find_linked_identity(tenant.id, kind, handle)
        if link is None:
            return None
        return self.store.get_user(tenant.id, link.user_id)


class PasswordProvider:
    """``identifier:name:password`` credentials checked against argon2 hashes.

    Identifiers without ``@`` are phone numbers or login ids and must resolve
    through a linked identity. E-mail identifiers may auto-register when
    configured; the new principal starts inactive unless unverified e-mails
    are allowed.
    """

    def __init__(self, store: ProviderStore, settings: Settings) -> None:
        self.accounts = _AccountResolver(store, settings)
        self.settings = settings

    @staticmethod
    def _split(credential: str) -> tuple[str, Optional[str], str]:
        if not credential or ":" not in credential:
            raise CredentialExchangeFailed("password credential must be identifier:name:password")
        parts = credential.split(":", 2)
        if len(parts) == 2:
            identifier, password = parts
            name = None
        else:
            identifier, name, password = parts
        identifier = identifier.strip()
        if not identifier:
            raise CredentialExchangeFailed("identifier is required")
        return identifier, (name or None), password

    async def exchange_credential(self, tenant: Tenant, credential: str) -> User:
        identifier, name, password = self._split(credential)

        if "@" not in identifier:
            user = self.accounts.resolve_linked(tenant, identifier)
            if user is None:
                raise AccountNotFound("account does not exist")
            if not verify_password(user.password_hash, password, user_id=user.id):
                raise CredentialExchangeFailed("identifier or password is incorrect")
            return user

        user = self.accounts.store.get_user_by_identifier(tenant.id, identifier)
        if user is None:
            if not self.accounts.may_register(identifier):
                raise AccountNotFound("account does not exist")
            if not password:
                raise CredentialExchangeFailed("password is required to register")
            return self.accounts.register(
                tenant,
                identifier,
                email=identifier,
                name=name,
                password_hash=hash_password(password),
                active=self.settings.allow_unverified_emails,
            )
        if not verify_password(user.password_hash, password, user_id=user.id):
            raise CredentialExchangeFailed("identifier or password is incorrect")
        return user


class VerificationCodeProvider:
    """``target:code`` credentials where the code was sent to a phone or mailbox."""

    def __init__(
        self, store: ProviderStore, settings: Settings, cache: Optional[RedisCache] = None
    ) -> None:
        self.accounts = _AccountResolver(store, settings)
        self.cache = cache

    async def _consume(self, tenant: Tenant, target: str, code: str) -> bool:
        if self.cache is not None:
            try:
                stored = await self.cache.pop_verification_code(tenant.id, target)
            except RedisError as exc:
                logger.error("verification_code_cache_failed", tenant_id=tenant.id, error=str(exc))
                raise CredentialExchangeFailed("verification code could not be checked") from exc
            return stored is not None and hmac.compare_digest(stored.encode(), code.encode())
        return self.accounts.store.consume_verification_code(
            tenant.id, target, code, datetime.now(timezone.utc)
        )

    async def exchange_credential(self, tenant: Tenant, credential: str) -> User:
        target, sep, code = (credential or "").partition(":")
        target, code = target.strip(), code.strip()
        if not sep or not target or not code:
            raise CredentialExchangeFailed("verification credential must be target:code")
        if not await self._consume(tenant, target, code):
            raise CredentialExchangeFailed("verification code is invalid or expired")

        user = self.accounts.store.get_user_by_identifier(tenant.id, target)
        if user is None and "@" not in target:
            user = self.accounts.resolve_linked(tenant, target)
        if user is not None:
            return user
        if not self.accounts.may_register(target):
            raise AccountNotFound("account does not exist")
        return self.accounts.register(
            tenant,
            target,
            email=target if "@" in target else None,
            name=None,
        )


@dataclass
class OAuthIdentity:
    provider_uid: Optional[str]
    email: Optional[str] = None
    name: Optional[str] = None


def _parse_google(info: dict) -> OAuthIdentity:
    return OAuthIdentity(info.get("id") or info.get("sub"), info.get("email"), info.get("name"))


def _parse_github(info: dict) -> OAuthIdentity:
    uid = info.get("id")
    return OAuthIdentity(
        str(uid) if uid is not None else None,
        info.get("email"),
        info.get("name") or info.get("login"),
    )


def _parse_facebook(info: dict) -> OAuthIdentity:
    return OAuthIdentity(info.get("id"), info.get("email"), info.get("name"))


def _parse_microsoft(info: dict) -> OAuthIdentity:
    return OAuthIdentity(
        info.get("id"),
        info.get("mail") or info.get("userPrincipalName"),
        info.get("displayName"),
    )


def _parse_linkedin(info: dict) -> OAuthIdentity:
    return OAuthIdentity(info.get("sub"), info.get("email"), info.get("name"))


_OAUTH_PARSERS: Dict[str, Callable[[dict], OAuthIdentity]] = {
    "google": _parse_google,
    "github": _parse_github,
    "facebook": _parse_facebook,
    "microsoft": _parse_microsoft,
    "linkedin": _parse_linkedin,
}


class OAuthProvider:
    """Validates an upstream OAuth access token by calling the provider's userinfo API.

    Social identities are keyed as ``<provider>:<uid>``. A missing principal
    registers under the same rules as password logins.
    """

    def __init__(
        self,
        name: str,
        userinfo_url: str,
        parse: Callable[[dict], OAuthIdentity],
        store: ProviderStore,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.userinfo_url = userinfo_url
        self.parse = parse
        self.accounts = _AccountResolver(store, settings)
        self.timeout = settings.oauth_http_timeout_seconds
        self.transport = transport

    async def _fetch_userinfo(self, access_token: str) -> dict:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = await client.get(self.userinfo_url, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "oauth_userinfo_rejected",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise CredentialExchangeFailed(
                f"{self.name} rejected the access token"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_userinfo_failed", provider=self.name, error=str(exc))
            raise CredentialExchangeFailed(f"{self.name} is unreachable") from exc
        except ValueError as exc:
            raise CredentialExchangeFailed(
                f"{self.name} returned an unreadable profile"
            ) from exc
        if not isinstance(payload, dict):
            raise CredentialExchangeFailed(f"{self.name} returned an unreadable profile")
        return payload

    async def exchange_credential(self, tenant: Tenant, credential: str) -> User:
        if not credential:
            raise CredentialExchangeFailed("access token is required")
        identity = self.parse(await self._fetch_userinfo(credential))
        if not identity.provider_uid:
            raise CredentialExchangeFailed(f"{self.name} profile has no user id")
        identifier = f"{self.name}:{identity.provider_uid}"
        user = self.accounts.store.get_user_by_identifier(tenant.id, identifier)
        if user is not None:
            return user
        if not self.accounts.may_register(identifier):
            raise AccountNotFound("account does not exist")
        return self.accounts.register(
            tenant, identifier, email=identity.email, name=identity.name
        )


class DirectoryProvider:
    """``username:password`` checked by an injected directory client."""

    name = "ldap"

    def __init__(
        self,
        store: ProviderStore,
        settings: Settings,
        client: Optional[DirectoryClient] = None,
    ) -> None:
        self.accounts = _AccountResolver(store, settings)
        self.client = client

    async def exchange_credential(self, tenant: Tenant, credential: str) -> User:
        if self.client is None:
            raise CredentialExchangeFailed("directory authentication is not configured")
        username, sep, password = (credential or "").partition(":")
        if not sep or not username or not password:
            raise CredentialExchangeFailed("directory credential must be username:password")
        attributes = await self.client.authenticate(username, password)
        if not attributes:
            raise CredentialExchangeFailed("directory rejected the credentials")
        uid = attributes.get("uid") or username
        identifier = f"{self.name}:{uid}"
        user = self.accounts.store.get_user_by_identifier(tenant.id, identifier)
        if user is not None:
            return user
        if not self.accounts.may_register(identifier):
            raise AccountNotFound("account does not exist")
        return self.accounts.register(
            tenant,
            identifier,
            email=attributes.get("mail") or attributes.get("email"),
            name=attributes.get("cn") or attributes.get("name"),
        )


class ProviderRegistry:
    """Case-insensitive map from provider name to credential provider."""

    def __init__(self) -> None:
        self._providers: Dict[str, CredentialProvider] = {}

    def register(self, name: str, provider: CredentialProvider) -> None:
        self._providers[name.strip().lower()] = provider

    def get(self, name: Optional[str]) -> CredentialProvider:
        provider = self._providers.get((name or "").strip().lower())
        if provider is None:
            raise ProviderUnknown(
                f"unknown identity provider '{name}'", detail={"provider": name}
            )
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)


def build_default_registry(
    store: ProviderStore,
    settings: Settings,
    *,
    cache: Optional[RedisCache] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    directory_client: Optional[DirectoryClient] = None,
) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("password", PasswordProvider(store, settings))
    registry.register("verificationcode", VerificationCodeProvider(store, settings, cache))
    for name, url in OAUTH_USERINFO_URLS.items():
        registry.register(
            name,
            OAuthProvider(name, url, _OAUTH_PARSERS[name], store, settings, transport=transport),
        )
    if settings.oauth2_userinfo_url:
        id_field = settings.oauth2_id_field
        email_field = settings.oauth2_email_field
        name_field = settings.oauth2_name_field

        def _parse_generic(info: dict) -> OAuthIdentity:
            uid = info.get(id_field)
            return OAuthIdentity(
                str(uid) if uid is not None else None,
                info.get(email_field),
                info.get(name_field),
            )

        registry.register(
            "oauth2",
            OAuthProvider(
                "oauth2",
                settings.oauth2_userinfo_url,
                _parse_generic,
                store,
                settings,
                transport=transport,
            ),
        )
    registry.register("ldap", DirectoryProvider(store, settings, directory_client))
    return registry
