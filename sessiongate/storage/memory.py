from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sessiongate.logging import get_logger
from sessiongate.storage.errors import ConstraintViolation, StoreUnavailable
from sessiongate.storage.models import (
    LinkedIdentity,
    LoginSession,
    Pager,
    Tenant,
    User,
    VerificationCode,
)


class MemoryStore:
    """Dict-backed store used in tests and single-process deployments.

    State is optionally mirrored to ``<fs_root>/state/memory_store.json`` so a
    restarted process keeps its tenants, principals, session ledger and
    pending verification codes.
    """

    def __init__(self, fs_root: str | None = None, *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        # keyed by (tenant_id, user_id)
        self.users: Dict[tuple[str, str], User] = {}
        self.links: Dict[str, LinkedIdentity] = {}
        self.login_sessions: Dict[str, LoginSession] = {}
        self.verification_codes: Dict[tuple[str, str], VerificationCode] = {}
        # RLock so nested helpers can re-acquire within one thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._persist_enabled = persist and self.fs_root is not None
        if self._persist_enabled:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def verify_connection(self) -> None:
        return None

    # tenants -------------------------------------------------------------

    def create_tenant(
        self, identifier: str, name: Optional[str] = None, *, tenant_id: Optional[str] = None
    ) -> Tenant:
        with self._data_lock:
            tid = tenant_id or str(uuid.uuid4())
            if tid in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            if any(t.identifier == identifier for t in self.tenants.values()):
                raise ConstraintViolation(
                    "tenant identifier already exists", {"field": "identifier"}
                )
            tenant = Tenant(id=tid, identifier=identifier, name=name)
            self.tenants[tid] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    # principals ----------------------------------------------------------

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
    ) -> User:
        with self._data_lock:
            uid = user_id or str(uuid.uuid4())
            if (tenant_id, uid) in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            if self._find_user(tenant_id, identifier) is not None:
                raise ConstraintViolation(
                    "identifier already exists", {"field": "identifier"}
                )
            user = User(
                id=uid,
                tenant_id=tenant_id,
                identifier=identifier,
                email=email,
                name=name,
                password_hash=password_hash,
                active=active,
            )
            self.users[(tenant_id, uid)] = user
            self._persist_state()
            return user

    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get((tenant_id, user_id))

    def get_user_by_identifier(self, tenant_id: str, identifier: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user(tenant_id, identifier)

    def set_user_active(self, tenant_id: str, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get((tenant_id, user_id))
            if user is None:
                return None
            user.active = active
            self._persist_state()
            return user

    def _find_user(self, tenant_id: str, identifier: str) -> Optional[User]:
        for user in self.users.values():
            if user.tenant_id == tenant_id and user.identifier == identifier:
                return user
        return None

    # linked identities ---------------------------------------------------

    def link_identity(
        self, tenant_id: str, user_id: str, kind: str, value: str, *, active: bool = True
    ) -> LinkedIdentity:
        with self._data_lock:
            for existing in self.links.values():
                if (
                    existing.tenant_id == tenant_id
                    and existing.kind == kind
                    and existing.value == value
                ):
                    raise ConstraintViolation(
                        "linked identity already exists", {"field": kind}
                    )
            link = LinkedIdentity(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                user_id=user_id,
                kind=kind,
                value=value,
                active=active,
            )
            self.links[link.id] = link
            self._persist_state()
            return link

    def find_linked_identity(
        self, tenant_id: str, kind: str, value: str
    ) -> Optional[LinkedIdentity]:
        with self._data_lock:
            for link in self.links.values():
                if (
                    link.tenant_id == tenant_id
                    and link.kind == kind
                    and link.value == value
                    and link.active
                ):
                    return link
            return None

    # login session ledger ------------------------------------------------

    def create_login_session(
        self,
        tenant_id: str,
        user_id: str,
        client_class: str,
        login_time: int,
        *,
        user_name: Optional[str] = None,
    ) -> LoginSession:
        with self._data_lock:
            record = LoginSession(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                user_id=user_id,
                client_class=client_class,
                login_time=login_time,
                user_name=user_name,
            )
            self.login_sessions[record.id] = record
            try:
                self._persist_state()
            except StoreUnavailable:
                del self.login_sessions[record.id]
                raise
            return record

    def find_login_sessions(
        self,
        tenant_id: str,
        user_id: str,
        *,
        client_class: Optional[str] = None,
        login_time: Optional[int] = None,
        pager: Optional[Pager] = None,
    ) -> List[LoginSession]:
        """Term-filtered ledger query ordered newest first."""
        pager = pager or Pager()
        with self._data_lock:
            matches = [
                record
                for record in self.login_sessions.values()
                if record.tenant_id == tenant_id
                and record.user_id == user_id
                and (client_class is None or record.client_class == client_class)
                and (login_time is None or record.login_time == login_time)
            ]
        matches.sort(key=lambda r: r.login_time, reverse=True)
        return matches[pager.offset : pager.offset + pager.limit]

    def mark_login_sessions_failed(self, session_ids: Iterable[str], fail_time: int) -> int:
        updated = 0
        with self._data_lock:
            for session_id in session_ids:
                record = self.login_sessions.get(session_id)
                if record is None or record.fail_time:
                    continue
                record.fail_time = fail_time
                updated += 1
            if updated:
                self._persist_state()
        return updated

    # verification codes --------------------------------------------------

    def put_verification_code(self, code: VerificationCode) -> None:
        with self._data_lock:
            self.verification_codes[(code.tenant_id, code.target)] = code
            self._persist_state()

    def consume_verification_code(
        self, tenant_id: str, target: str, code: str, now: datetime
    ) -> bool:
        """Atomically check and delete a verification code; single use."""
        with self._data_lock:
            stored = self.verification_codes.get((tenant_id, target))
            if stored is None or stored.code != code:
                return False
            del self.verification_codes[(tenant_id, target)]
            self._persist_state()
            return stored.expires_at > now

    # persistence ---------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _persist_state(self) -> None:
        if not self._persist_enabled:
            return
        state = {
            "tenants": [
                {
                    "id": t.id,
                    "identifier": t.identifier,
                    "name": t.name,
                    "active": t.active,
                    "created_at": self._serialize_datetime(t.created_at),
                }
                for t in self.tenants.values()
            ],
            "users": [
                {
                    "id": u.id,
                    "tenant_id": u.tenant_id,
                    "identifier": u.identifier,
                    "email": u.email,
                    "name": u.name,
                    "password_hash": u.password_hash,
                    "active": u.active,
                    "created_at": self._serialize_datetime(u.created_at),
                }
                for u in self.users.values()
            ],
            "links": [
                {
                    "id": link.id,
                    "tenant_id": link.tenant_id,
                    "user_id": link.user_id,
                    "kind": link.kind,
                    "value": link.value,
                    "active": link.active,
                    "created_at": self._serialize_datetime(link.created_at),
                }
                for link in self.links.values()
            ],
            "login_sessions": [
                {
                    "id": s.id,
                    "tenant_id": s.tenant_id,
                    "user_id": s.user_id,
                    "client_class": s.client_class,
                    "login_time": s.login_time,
                    "user_name": s.user_name,
                    "fail_time": s.fail_time,
                    "created_at": self._serialize_datetime(s.created_at),
                }
                for s in self.login_sessions.values()
            ],
            "verification_codes": [
                {
                    "tenant_id": c.tenant_id,
                    "target": c.target,
                    "code": c.code,
                    "expires_at": self._serialize_datetime(c.expires_at),
                }
                for c in self.verification_codes.values()
            ],
        }
        try:
            self._state_path().write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: Tenant(
                id=t["id"],
                identifier=t["identifier"],
                name=t.get("name"),
                active=t.get("active", True),
                created_at=self._deserialize_datetime(t["created_at"]),
            )
            for t in data.get("tenants", [])
        }
        self.users = {}
        for u in data.get("users", []):
            self.users[(u["tenant_id"], u["id"])] = User(
                id=u["id"],
                tenant_id=u["tenant_id"],
                identifier=u["identifier"],
                email=u.get("email"),
                name=u.get("name"),
                password_hash=u.get("password_hash"),
                active=u.get("active", True),
                created_at=self._deserialize_datetime(u["created_at"]),
            )
        self.links = {
            link["id"]: LinkedIdentity(
                id=link["id"],
                tenant_id=link["tenant_id"],
                user_id=link["user_id"],
                kind=link["kind"],
                value=link["value"],
                active=link.get("active", True),
                created_at=self._deserialize_datetime(link["created_at"]),
            )
            for link in data.get("links", [])
        }
        self.login_sessions = {
            s["id"]: LoginSession(
                id=s["id"],
                tenant_id=s["tenant_id"],
                user_id=s["user_id"],
                client_class=s["client_class"],
                login_time=int(s["login_time"]),
                user_name=s.get("user_name"),
                fail_time=int(s.get("fail_time", 0)),
                created_at=self._deserialize_datetime(s["created_at"]),
            )
            for s in data.get("login_sessions", [])
        }
        self.verification_codes = {}
        for c in data.get("verification_codes", []):
            self.verification_codes[(c["tenant_id"], c["target"])] = VerificationCode(
                tenant_id=c["tenant_id"],
                target=c["target"],
                code=c["code"],
                expires_at=self._deserialize_datetime(c["expires_at"]),
            )
        self.logger.info(
            "memory_store_loaded",
            tenants=len(self.tenants),
            users=len(self.users),
            login_sessions=len(self.login_sessions),
        )
        return True
