from __future__ import annotations

import time
from typing import Iterable, List, Optional, Protocol

from sessiongate.logging import get_logger
from sessiongate.storage.errors import StoreUnavailable
from sessiongate.storage.models import LoginSession, Pager, User

logger = get_logger(__name__)


class LedgerStore(Protocol):
    def create_login_session(
        self,
        tenant_id: str,
        user_id: str,
        client_class: str,
        login_time: int,
        *,
        user_name: Optional[str] = None,
    ) -> LoginSession: ...

    def find_login_sessions(
        self,
        tenant_id: str,
        user_id: str,
        *,
        client_class: Optional[str] = None,
        login_time: Optional[int] = None,
        pager: Optional[Pager] = None,
    ) -> List[LoginSession]: ...

    def mark_login_sessions_failed(self, session_ids: Iterable[str], fail_time: int) -> int: ...


def live_only(records: Iterable[LoginSession]) -> List[LoginSession]:
    return [record for record in records if record.fail_time == 0]


class SessionLedger:
    """Login-session bookkeeping behind the one-live-session-per-client rule.

    Invalidation is best-effort: a failed bulk update is logged and the
    caller carries on, so a concurrent login for the same client class can
    briefly leave two live rows. Creation failures are fatal because a token
    without a ledger row can never validate.
    """

    def __init__(self, store: LedgerStore, *, page_size: int = 10) -> None:
        self.store = store
        self.page_size = page_size

    def find_live_sessions(
        self,
        tenant_id: str,
        user_id: str,
        client_class: Optional[str] = None,
        login_time: Optional[int] = None,
    ) -> List[LoginSession]:
        # Only the first page is consulted; older rows are already failed in practice
        records = self.store.find_login_sessions(
            tenant_id,
            user_id,
            client_class=client_class,
            login_time=login_time,
            pager=Pager(page=1, limit=self.page_size),
        )
        return live_only(records)

    def is_live(self, tenant_id: str, user_id: str, login_time: int) -> bool:
        return bool(self.find_live_sessions(tenant_id, user_id, login_time=login_time))

    def invalidate_sessions(self, records: Iterable[LoginSession]) -> int:
        pending = [record for record in records if record.fail_time == 0]
        if not pending:
            return 0
        fail_time = int(time.time() * 1000)
        try:
            updated = self.store.mark_login_sessions_failed(
                [record.id for record in pending], fail_time
            )
        except StoreUnavailable as exc:
            logger.warning(
                "session_invalidation_degraded",
                attempted=len(pending),
                error=exc.message,
            )
            return 0
        for record in pending:
            record.fail_time = fail_time
        if updated != len(pending):
            logger.warning(
                "session_invalidation_partial", attempted=len(pending), updated=updated
            )
        return updated

    def create_session(
        self,
        tenant_id: str,
        user_id: str,
        client_class: str,
        login_time: int,
        *,
        user_name: Optional[str] = None,
    ) -> LoginSession:
        record = self.store.create_login_session(
            tenant_id, user_id, client_class, login_time, user_name=user_name
        )
        if record is None:
            raise StoreUnavailable(
                "login session was not persisted",
                {"tenant_id": tenant_id, "user_id": user_id},
            )
        return record

    def supersede(
        self, tenant_id: str, user: User, client_class: str, login_time: int
    ) -> LoginSession:
        """Fail every live row for (tenant, user, client class), then record a new one."""
        try:
            previous = self.find_live_sessions(tenant_id, user.id, client_class=client_class)
        except StoreUnavailable as exc:
            logger.warning(
                "session_invalidation_degraded",
                tenant_id=tenant_id,
                user_id=user.id,
                client_class=client_class,
                error=exc.message,
            )
            previous = []
        invalidated = self.invalidate_sessions(previous)
        record = self.create_session(
            tenant_id, user.id, client_class, login_time, user_name=user.name
        )
        logger.info(
            "session_superseded",
            tenant_id=tenant_id,
            user_id=user.id,
            client_class=client_class,
            invalidated=invalidated,
            login_time=login_time,
        )
        return record
