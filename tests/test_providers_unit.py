"""Unit tests for credential providers.

Tests for:
- Provider registry lookup
- Password logins by e-mail, phone and login id
- Auto-registration rules
- Verification codes
- OAuth userinfo exchange (mocked transport)
- Directory logins
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from conftest import TEST_PASSWORD
from redis.exceptions import ConnectionError as RedisConnectionError

from sessiongate.service.errors import (
    AccountNotFound,
    CredentialExchangeFailed,
    ProviderUnknown,
)
from sessiongate.service.passwords import verify_password
from sessiongate.service.providers import (
    DirectoryProvider,
    OAuthProvider,
    PasswordProvider,
    ProviderRegistry,
    VerificationCodeProvider,
    _parse_github,
    build_default_registry,
    is_phone,
)
from sessiongate.storage.models import LINK_KIND_LOGIN_ID, LINK_KIND_PHONE, VerificationCode


def _open_registration(settings):
    return settings.model_copy(update={"allow_auto_register_users": True})


class TestRegistry:
    def test_lookup_is_case_insensitive(self, memory_store, settings):
        registry = build_default_registry(memory_store, settings)

        assert isinstance(registry.get("PASSWORD"), PasswordProvider)
        assert isinstance(registry.get("Google"), OAuthProvider)

    def test_unknown_provider_raises(self):
        registry = ProviderRegistry()

        with pytest.raises(ProviderUnknown):
            registry.get("myspace")

    def test_default_registry_names(self, memory_store, settings):
        names = build_default_registry(memory_store, settings).names()

        for expected in ("password", "verificationcode", "google", "github", "facebook", "ldap"):
            assert expected in names
        # Generic oauth2 is only registered when an endpoint is configured
        assert "oauth2" not in names

    def test_generic_oauth2_registered_when_configured(self, memory_store, settings):
        configured = settings.model_copy(
            update={"oauth2_userinfo_url": "https://sso.example.com/userinfo"}
        )

        assert "oauth2" in build_default_registry(memory_store, configured).names()


class TestPasswordProvider:
    @pytest.fixture
    def provider(self, memory_store, settings):
        return PasswordProvider(memory_store, settings)

    async def test_email_login(self, provider, tenant, test_user, password_credential):
        user = await provider.exchange_credential(tenant, password_credential)

        assert user.id == test_user.id

    async def test_wrong_password_fails(self, provider, tenant, test_user):
        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, f"{test_user.identifier}:Alice:nope")

    async def test_unknown_email_without_auto_register(self, provider, tenant):
        with pytest.raises(AccountNotFound):
            await provider.exchange_credential(tenant, "nobody@example.com:Nobody:secret")

    async def test_auto_register_creates_inactive_principal(
        self, memory_store, settings, tenant
    ):
        provider = PasswordProvider(
            memory_store, settings.model_copy(update={"allow_auto_register_users": True})
        )

        user = await provider.exchange_credential(tenant, "new@example.com:New User:pw-123456")

        assert user.name == "New User"
        assert user.active is False
        assert verify_password(user.password_hash, "pw-123456")

    async def test_admin_identifier_may_register(self, memory_store, settings, tenant):
        provider = PasswordProvider(
            memory_store,
            settings.model_copy(
                update={"admin_identifier": "root@example.com", "allow_unverified_emails": True}
            ),
        )

        user = await provider.exchange_credential(tenant, "root@example.com:Admin:pw-123456")

        assert user.active is True

    async def test_phone_login_through_linked_identity(
        self, provider, memory_store, tenant, test_user
    ):
        memory_store.link_identity(tenant.id, test_user.id, LINK_KIND_PHONE, "13800138000")

        user = await provider.exchange_credential(tenant, f"13800138000::{TEST_PASSWORD}")

        assert user.id == test_user.id

    async def test_login_id_through_linked_identity(
        self, provider, memory_store, tenant, test_user
    ):
        memory_store.link_identity(tenant.id, test_user.id, LINK_KIND_LOGIN_ID, "alice")

        user = await provider.exchange_credential(tenant, f"alice::{TEST_PASSWORD}")

        assert user.id == test_user.id

    async def test_unlinked_handle_is_account_not_found(self, provider, tenant, test_user):
        with pytest.raises(AccountNotFound):
            await provider.exchange_credential(tenant, f"ghost::{TEST_PASSWORD}")

    async def test_inactive_link_is_ignored(self, provider, memory_store, tenant, test_user):
        memory_store.link_identity(
            tenant.id, test_user.id, LINK_KIND_LOGIN_ID, "alice", active=False
        )

        with pytest.raises(AccountNotFound):
            await provider.exchange_credential(tenant, f"alice::{TEST_PASSWORD}")

    async def test_malformed_credential(self, provider, tenant):
        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, "no-separator")

    async def test_principal_is_scoped_to_tenant(
        self, provider, other_tenant, test_user, password_credential
    ):
        with pytest.raises(AccountNotFound):
            await provider.exchange_credential(other_tenant, password_credential)


def test_is_phone():
    assert is_phone("13800138000")
    assert not is_phone("23800138000")
    assert not is_phone("1380013800")
    assert not is_phone("1380013800a")


class TestVerificationCodeProvider:
    @pytest.fixture
    def provider(self, memory_store, settings):
        return VerificationCodeProvider(memory_store, settings)

    def _issue_code(self, store, tenant, target, code, *, ttl=300):
        store.put_verification_code(
            VerificationCode(
                tenant_id=tenant.id,
                target=target,
                code=code,
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
            )
        )

    async def test_code_login_is_single_use(self, provider, memory_store, tenant, test_user):
        self._issue_code(memory_store, tenant, test_user.identifier, "424242")

        user = await provider.exchange_credential(tenant, f"{test_user.identifier}:424242")
        assert user.id == test_user.id

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, f"{test_user.identifier}:424242")

    async def test_wrong_code(self, provider, memory_store, tenant, test_user):
        self._issue_code(memory_store, tenant, test_user.identifier, "424242")

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, f"{test_user.identifier}:000000")

    async def test_expired_code(self, provider, memory_store, tenant, test_user):
        self._issue_code(memory_store, tenant, test_user.identifier, "424242", ttl=-5)

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, f"{test_user.identifier}:424242")

    async def test_phone_code_resolves_linked_principal(
        self, provider, memory_store, tenant, test_user
    ):
        memory_store.link_identity(tenant.id, test_user.id, LINK_KIND_PHONE, "13900000000")
        self._issue_code(memory_store, tenant, "13900000000", "1111")

        user = await provider.exchange_credential(tenant, "13900000000:1111")

        assert user.id == test_user.id

    async def test_cache_backed_codes(self, memory_store, settings, tenant, test_user):
        class _FakeCache:
            def __init__(self):
                self.codes = {(tenant.id, test_user.identifier): "9999"}

            async def pop_verification_code(self, tenant_id, target):
                return self.codes.pop((tenant_id, target), None)

        provider = VerificationCodeProvider(memory_store, settings, cache=_FakeCache())

        user = await provider.exchange_credential(tenant, f"{test_user.identifier}:9999")

        assert user.id == test_user.id

    async def test_cache_outage_fails_exchange(self, memory_store, settings, tenant, test_user):
        class _DownCache:
            async def pop_verification_code(self, tenant_id, target):
                raise RedisConnectionError("Connection refused")

        provider = VerificationCodeProvider(memory_store, settings, cache=_DownCache())

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, f"{test_user.identifier}:9999")


def _userinfo_transport(payload, *, status_code=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


class TestOAuthProvider:
    async def test_github_profile_registers_principal(self, memory_store, settings, tenant):
        seen = []
        provider = OAuthProvider(
            "github",
            "https://api.github.com/user",
            _parse_github,
            memory_store,
            _open_registration(settings),
            transport=_userinfo_transport(
                {"id": 4242, "login": "octo", "email": "octo@example.com"}, seen=seen
            ),
        )

        user = await provider.exchange_credential(tenant, "gho_upstream_token")

        assert user.identifier == "github:4242"
        assert user.email == "octo@example.com"
        assert user.name == "octo"
        assert seen[0].headers["Authorization"] == "Bearer gho_upstream_token"

    async def test_unknown_profile_without_auto_register(self, memory_store, settings, tenant):
        provider = OAuthProvider(
            "github",
            "https://api.github.com/user",
            _parse_github,
            memory_store,
            settings,
            transport=_userinfo_transport({"id": 4242, "login": "octo"}),
        )

        with pytest.raises(AccountNotFound):
            await provider.exchange_credential(tenant, "gho_upstream_token")
        assert memory_store.get_user_by_identifier(tenant.id, "github:4242") is None

    async def test_admin_profile_may_register(self, memory_store, settings, tenant):
        provider = OAuthProvider(
            "github",
            "https://api.github.com/user",
            _parse_github,
            memory_store,
            settings.model_copy(update={"admin_identifier": "github:1"}),
            transport=_userinfo_transport({"id": 1, "login": "root"}),
        )

        user = await provider.exchange_credential(tenant, "token")

        assert user.identifier == "github:1"

    async def test_existing_principal_is_reused(self, memory_store, settings, tenant):
        existing = memory_store.create_user(tenant.id, "github:7", name="seven")
        provider = OAuthProvider(
            "github",
            "https://api.github.com/user",
            _parse_github,
            memory_store,
            settings,
            transport=_userinfo_transport({"id": 7}),
        )

        user = await provider.exchange_credential(tenant, "token")

        assert user.id == existing.id

    async def test_rejected_token_fails_exchange(self, memory_store, settings, tenant):
        provider = OAuthProvider(
            "github",
            "https://api.github.com/user",
            _parse_github,
            memory_store,
            settings,
            transport=_userinfo_transport({"message": "Bad credentials"}, status_code=401),
        )

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, "expired")

    async def test_profile_without_id_fails(self, memory_store, settings, tenant):
        provider = OAuthProvider(
            "github",
            "https://api.github.com/user",
            _parse_github,
            memory_store,
            settings,
            transport=_userinfo_transport({"login": "anon"}),
        )

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, "token")

    async def test_network_error_fails_exchange(self, memory_store, settings, tenant):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = OAuthProvider(
            "github",
            "https://api.github.com/user",
            _parse_github,
            memory_store,
            settings,
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, "token")


class TestDirectoryProvider:
    async def test_not_configured(self, memory_store, settings, tenant):
        provider = DirectoryProvider(memory_store, settings)

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, "bob:secret")

    async def test_directory_bind(self, memory_store, settings, tenant):
        class _Directory:
            async def authenticate(self, username, password):
                if password != "secret":
                    return None
                return {"uid": username, "mail": f"{username}@corp.example", "cn": "Bob"}

        provider = DirectoryProvider(memory_store, _open_registration(settings), _Directory())

        user = await provider.exchange_credential(tenant, "bob:secret")
        assert user.identifier == "ldap:bob"
        assert user.email == "bob@corp.example"

        with pytest.raises(CredentialExchangeFailed):
            await provider.exchange_credential(tenant, "bob:wrong")

    async def test_unknown_account_without_auto_register(self, memory_store, settings, tenant):
        class _Directory:
            async def authenticate(self, username, password):
                return {"uid": username}

        provider = DirectoryProvider(memory_store, settings, _Directory())

        with pytest.raises(AccountNotFound):
            await provider.exchange_credential(tenant, "carol:secret")
        assert memory_store.get_user_by_identifier(tenant.id, "ldap:carol") is None
