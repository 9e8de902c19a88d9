"""Unit tests for the HS256 token issuer.

Tests for:
- Claim layout of minted tokens
- Signature and structure rejection
- Uniqueness of notBefore per issuer
"""

import base64
import json

import pytest

from sessiongate.service.errors import MalformedToken, SignatureInvalid
from sessiongate.service.tokens import TokenIssuer


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


def _segments(raw):
    header, payload, sig = raw.split(".")
    pad = lambda s: s + "=" * ((4 - len(s) % 4) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header))),
        json.loads(base64.urlsafe_b64decode(pad(payload))),
        sig,
    )


def _b64(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


class TestMint:
    def test_claims_carry_subject_and_tenant(self, issuer, test_user, tenant):
        minted = issuer.mint(test_user, tenant)
        header, payload, _ = _segments(minted.raw)

        assert header == {"alg": "HS256", "typ": "JWT"}
        assert payload["sub"] == test_user.id
        assert payload["appid"] == tenant.id
        assert minted.claims.subject == test_user.id
        assert minted.claims.tenant_id == tenant.id

    def test_expiry_and_refresh_follow_settings(self, issuer, settings, test_user, tenant):
        claims = issuer.mint(test_user, tenant).claims

        assert claims.expires - claims.not_before == settings.jwt_expires_after_seconds * 1000
        assert claims.refresh - claims.not_before == settings.jwt_refresh_interval_seconds * 1000
        assert claims.issued_at == claims.not_before

    def test_not_before_is_strictly_increasing(self, issuer, test_user, tenant):
        """Back-to-back mints must never share a correlation key."""
        stamps = [issuer.mint(test_user, tenant).claims.not_before for _ in range(50)]

        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)


class TestParse:
    def test_parse_round_trips_millisecond_not_before(self, issuer, test_user, tenant):
        minted = issuer.mint(test_user, tenant)

        parsed = issuer.parse(minted.raw)

        assert parsed == minted.claims

    def test_parse_does_not_enforce_expiry(self, issuer, test_user, tenant):
        minted = issuer.mint(test_user, tenant)

        parsed = issuer.parse(minted.raw)

        assert parsed.is_expired(parsed.expires + 1)
        assert not parsed.is_expired(parsed.not_before)

    def test_wrong_secret_is_signature_invalid(self, issuer, settings, test_user, tenant):
        other = TokenIssuer(settings.model_copy(update={"jwt_secret": "x" * 40}))
        raw = other.mint(test_user, tenant).raw

        with pytest.raises(SignatureInvalid):
            issuer.parse(raw)

    def test_tampered_payload_is_signature_invalid(self, issuer, test_user, tenant):
        header, payload, sig = issuer.mint(test_user, tenant).raw.split(".")
        forged = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        forged["sub"] = "mallory"

        with pytest.raises(SignatureInvalid):
            issuer.parse(f"{header}.{_b64(forged)}.{sig}")

    @pytest.mark.parametrize("raw", ["", "abc", "a.b", "a.b.c.d", "!!!.???.sig"])
    def test_structurally_broken_tokens_are_malformed(self, issuer, raw):
        with pytest.raises(MalformedToken):
            issuer.parse(raw)

    def test_non_ascii_signature_is_malformed(self, issuer, test_user, tenant):
        header, payload, sig = issuer.mint(test_user, tenant).raw.split(".")

        with pytest.raises(MalformedToken):
            issuer.parse(f"{header}.{payload}.{sig[:-1]}é")

    def test_alg_none_is_rejected(self, issuer):
        raw = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64({'sub': 'x', 'appid': 'y'})}."

        with pytest.raises(MalformedToken):
            issuer.parse(raw)

    def test_missing_claims_are_malformed(self, issuer):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = _b64({"sub": "someone"})
        signing_input = f"{header}.{payload}"
        raw = f"{signing_input}.{issuer._sign(signing_input)}"

        with pytest.raises(MalformedToken):
            issuer.parse(raw)
