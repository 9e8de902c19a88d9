from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_USER_COLUMNS = "id, tenant_id, identifier, email, name, password_hash, active, created_at"
_SESSION_COLUMNS = (
    "id, tenant_id, user_id, user_name, client_class, login_time, fail_time, created_at"
)


class PostgresStore:
    """Postgres-backed store for tenants, principals and the session ledger."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure ledger tables exist before serving requests."""

        required_tables = [
            "tenant",
            "app_user",
            "linked_identity",
            "login_session",
            "verification_code",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sessiongate/sql/001_schema.sql.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("database unreachable", {"error": str(exc)}) from exc

    # row mappers ---------------------------------------------------------

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=row["id"],
            identifier=row["identifier"],
            name=row.get("name"),
            active=row.get("active", True),
            created_at=row["created_at"],
        )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            tenant_id=row["tenant_id"],
            identifier=row["identifier"],
            email=row.get("email"),
            name=row.get("name"),
            password_hash=row.get("password_hash"),
            active=row.get("active", True),
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> LoginSession:
        return LoginSession(
            id=row["id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            user_name=row.get("user_name"),
            client_class=row["client_class"],
            login_time=int(row["login_time"]),
            fail_time=int(row.get("fail_time") or 0),
            created_at=row["created_at"],
        )

    # tenants -------------------------------------------------------------

    def create_tenant(
        self, identifier: str, name: Optional[str] = None, *, tenant_id: Optional[str] = None
    ) -> Tenant:
        tid = tenant_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenant (id, identifier, name)
                    VALUES (%s, %s, %s)
                    RETURNING id, identifier, name, active, created_at
                    """,
                    (tid, identifier, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"field": "identifier"})
        except errors.OperationalError as exc:
            raise StoreUnavailable("tenant insert failed", {"error": str(exc)}) from exc
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, identifier, name, active, created_at FROM tenant WHERE id = %s",
                    (tenant_id,),
                ).fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("tenant lookup failed", {"error": str(exc)}) from exc
        return self._tenant_from_row(row) if row else None

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
        uid = user_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, tenant_id, identifier, email, name, password_hash, active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (uid, tenant_id, identifier, email, name, password_hash, active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier already exists", {"field": "identifier"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant not found", {"tenant_id": tenant_id})
        except errors.OperationalError as exc:
            raise StoreUnavailable("user insert failed", {"error": str(exc)}) from exc
        return self._user_from_row(row)

    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user WHERE tenant_id = %s AND id = %s",
                    (tenant_id, user_id),
                ).fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("user lookup failed", {"error": str(exc)}) from exc
        return self._user_from_row(row) if row else None

    def get_user_by_identifier(self, tenant_id: str, identifier: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user WHERE tenant_id = %s AND identifier = %s",
                    (tenant_id, identifier),
                ).fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("user lookup failed", {"error": str(exc)}) from exc
        return self._user_from_row(row) if row else None

    def set_user_active(self, tenant_id: str, user_id: str, active: bool) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET active = %s WHERE tenant_id = %s AND id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (active, tenant_id, user_id),
                ).fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("user update failed", {"error": str(exc)}) from exc
        return self._user_from_row(row) if row else None

    # linked identities ---------------------------------------------------

    def link_identity(
        self, tenant_id: str, user_id: str, kind: str, value: str, *, active: bool = True
    ) -> LinkedIdentity:
        link_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO linked_identity (id, tenant_id, user_id, kind, value, active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING created_at
                    """,
                    (link_id, tenant_id, user_id, kind, value, active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("linked identity already exists", {"field": kind})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        except errors.OperationalError as exc:
            raise StoreUnavailable("linked identity insert failed", {"error": str(exc)}) from exc
        return LinkedIdentity(
            id=link_id,
            tenant_id=tenant_id,
            user_id=user_id,
            kind=kind,
            value=value,
            active=active,
            created_at=row["created_at"],
        )

    def find_linked_identity(
        self, tenant_id: str, kind: str, value: str
    ) -> Optional[LinkedIdentity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, tenant_id, user_id, kind, value, active, created_at
                    FROM linked_identity
                    WHERE tenant_id = %s AND kind = %s AND value = %s AND active
                    """,
                    (tenant_id, kind, value),
                ).fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("linked identity lookup failed", {"error": str(exc)}) from exc
        if not row:
            return None
        return LinkedIdentity(**row)

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
        session_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO login_session (id, tenant_id, user_id, user_name, client_class, login_time)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (session_id, tenant_id, user_id, user_name, client_class, login_time),
                ).fetchone()
        except (errors.OperationalError, errors.IntegrityError) as exc:
            raise StoreUnavailable(
                "login session insert failed", {"error": str(exc)}
            ) from exc
        return self._session_from_row(row)

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
        clauses = ["tenant_id = %s", "user_id = %s"]
        params: list[Any] = [tenant_id, user_id]
        if client_class is not None:
            clauses.append("client_class = %s")
            params.append(client_class)
        if login_time is not None:
            clauses.append("login_time = %s")
            params.append(login_time)
        params.extend([pager.limit, pager.offset])
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_SESSION_COLUMNS} FROM login_session
                    WHERE {" AND ".join(clauses)}
                    ORDER BY login_time DESC
                    LIMIT %s OFFSET %s
                    """,
                    params,
                ).fetchall()
        except errors.OperationalError as exc:
            raise StoreUnavailable("login session query failed", {"error": str(exc)}) from exc
        return [self._session_from_row(row) for row in rows]

    def mark_login_sessions_failed(self, session_ids: Iterable[str], fail_time: int) -> int:
        ids = list(session_ids)
        if not ids:
            return 0
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE login_session SET fail_time = %s
                    WHERE id = ANY(%s) AND fail_time = 0
                    """,
                    (fail_time, ids),
                )
                return cur.rowcount or 0
        except errors.OperationalError as exc:
            raise StoreUnavailable("login session update failed", {"error": str(exc)}) from exc

    # verification codes --------------------------------------------------

    def put_verification_code(self, code: VerificationCode) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verification_code (tenant_id, target, code, expires_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (tenant_id, target)
                    DO UPDATE SET code = EXCLUDED.code, expires_at = EXCLUDED.expires_at
                    """,
                    (code.tenant_id, code.target, code.code, code.expires_at),
                )
        except errors.OperationalError as exc:
            raise StoreUnavailable("verification code insert failed", {"error": str(exc)}) from exc

    def consume_verification_code(
        self, tenant_id: str, target: str, code: str, now: datetime
    ) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    DELETE FROM verification_code
                    WHERE tenant_id = %s AND target = %s AND code = %s
                    RETURNING expires_at
                    """,
                    (tenant_id, target, code),
                ).fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("verification code lookup failed", {"error": str(exc)}) from exc
        if not row:
            return False
        return row["expires_at"] > now
