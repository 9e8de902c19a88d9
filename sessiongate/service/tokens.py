from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.errors import MalformedToken, SignatureInvalid
from sessiongate.storage.models import Tenant, User

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "appid", "nbf", "exp")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_ms(numeric_date: Any) -> int:
    return int(round(float(numeric_date) * 1000))


@dataclass(frozen=True)
class TokenClaims:
    """Decoded claim set. All instants are epoch milliseconds.

    ``not_before`` doubles as the correlation key into the session ledger.
    """

    subject: str
    tenant_id: str
    not_before: int
    issued_at: int
    expires: int
    refresh: int
    issuer: Optional[str] = None

    def is_expired(self, now_ms: int, *, leeway_ms: int = 0) -> bool:
        return self.expires <= now_ms - leeway_ms


@dataclass(frozen=True)
class MintedToken:
    raw: str
    claims: TokenClaims


class TokenIssuer:
    """Mints and parses HS256 tokens signed with the gateway secret.

    ``parse`` checks structure and signature only; expiry and session
    liveness are the caller's concern.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        # notBefore must be unique per issuer so ledger rows never collide
        self._nbf_lock = threading.Lock()
        self._last_nbf_ms = 0

    def _next_not_before(self) -> int:
        with self._nbf_lock:
            nbf = max(_now_ms(), self._last_nbf_ms + 1)
            self._last_nbf_ms = nbf
            return nbf

    def mint(self, user: User, tenant: Tenant) -> MintedToken:
        nbf_ms = self._next_not_before()
        exp_ms = nbf_ms + self.settings.jwt_expires_after_seconds * 1000
        refresh_ms = nbf_ms + self.settings.jwt_refresh_interval_seconds * 1000
        payload = {
            "sub": user.id,
            "appid": tenant.id,
            "iss": self.settings.jwt_issuer,
            "iat": nbf_ms / 1000,
            "nbf": nbf_ms / 1000,
            "exp": exp_ms / 1000,
            "refresh": refresh_ms,
        }
        raw = self._encode_jwt(payload)
        claims = TokenClaims(
            subject=user.id,
            tenant_id=tenant.id,
            not_before=nbf_ms,
            issued_at=nbf_ms,
            expires=exp_ms,
            refresh=refresh_ms,
            issuer=self.settings.jwt_issuer,
        )
        return MintedToken(raw=raw, claims=claims)

    def parse(self, raw: str) -> TokenClaims:
        payload = self._decode_jwt(raw)
        missing = [claim for claim in _REQUIRED_CLAIMS if payload.get(claim) in (None, "")]
        if missing:
            raise MalformedToken("token is missing required claims", detail={"missing": missing})
        issuer = payload.get("iss")
        if issuer is not None and issuer != self.settings.jwt_issuer:
            raise MalformedToken("token issuer not recognised")
        try:
            nbf_ms = _to_ms(payload["nbf"])
            exp_ms = _to_ms(payload["exp"])
            iat_ms = _to_ms(payload.get("iat", payload["nbf"]))
            refresh_ms = int(payload.get("refresh") or exp_ms)
        except (TypeError, ValueError) as exc:
            raise MalformedToken("token time claims are not numeric") from exc
        return TokenClaims(
            subject=str(payload["sub"]),
            tenant_id=str(payload["appid"]),
            not_before=nbf_ms,
            issued_at=iat_ms,
            expires=exp_ms,
            refresh=refresh_ms,
            issuer=issuer,
        )

    # wire format ---------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        # base64url segments are ASCII; compare_digest rejects non-ASCII str
        if not token.isascii():
            raise MalformedToken("token must be ASCII")
        try:
            header_b64, payload_b64, sig_b64 = token.strip().split(".")
        except ValueError:
            raise MalformedToken("token must have three segments")

        # Reject anything but HS256 to block algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            logger.warning("jwt_header_decode_failed")
            raise MalformedToken("token header is not valid JSON")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise MalformedToken("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise SignatureInvalid("token signature does not verify")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedToken("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedToken("token payload must be an object")
        return payload
