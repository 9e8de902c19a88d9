from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


CLIENT_CLASS_PC = "PC"
CLIENT_CLASS_MOBILE = "Mobile"
CLIENT_CLASS_WECHAT = "MicroMessenger"
CLIENT_CLASSES = (CLIENT_CLASS_PC, CLIENT_CLASS_MOBILE, CLIENT_CLASS_WECHAT)

LINK_KIND_PHONE = "phone"
LINK_KIND_LOGIN_ID = "login_id"


@dataclass
class Tenant:
    id: str
    identifier: str
    name: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class User:
    id: str
    tenant_id: str
    identifier: str
    email: Optional[str] = None
    name: Optional[str] = None
    password_hash: Optional[str] = None
    active: bool = True
    created_at: datetime = field(default_factory=_utcnow)

    def snapshot(self) -> dict:
        """Public view of the principal, safe to return to clients."""
        return {
            "id": self.id,
            "appid": self.tenant_id,
            "identifier": self.identifier,
            "email": self.email,
            "name": self.name,
            "active": self.active,
        }


@dataclass
class LinkedIdentity:
    """Alternate login handle (phone number or login id) pointing at a principal."""

    id: str
    tenant_id: str
    user_id: str
    kind: str
    value: str
    active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class LoginSession:
    """Ledger row binding a token's notBefore to a (tenant, user, client class).

    ``fail_time`` is 0 while the session is live and holds the invalidation
    time in epoch milliseconds afterwards. Rows are never deleted.
    """

    id: str
    tenant_id: str
    user_id: str
    client_class: str
    login_time: int
    user_name: Optional[str] = None
    fail_time: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def live(self) -> bool:
        return self.fail_time == 0


@dataclass
class VerificationCode:
    tenant_id: str
    target: str
    code: str
    expires_at: datetime


@dataclass
class Pager:
    page: int = 1
    limit: int = 10

    @property
    def offset(self) -> int:
        return max(self.page - 1, 0) * self.limit
