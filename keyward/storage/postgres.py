from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from keyward.logging import get_logger
from keyward.storage.common import (
    ensure_utc,
    generate_uuid,
    normalize_email,
    parse_ip_address,
    safe_row_value,
)
from keyward.storage.errors import BackendUnavailable, ConstraintViolation
from keyward.storage.models import (
    Account,
    AccountStatusUpdate,
    AuditCategory,
    AuditEvent,
    AuditQuery,
    AuditStatus,
    LockoutState,
    Session,
    SingleUseToken,
    TokenPurpose,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        credential_hash TEXT NOT NULL,
        salt BYTEA NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
        last_failed_login_at TIMESTAMPTZ,
        locked BOOLEAN NOT NULL DEFAULT FALSE,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        profile JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        access_fingerprint TEXT NOT NULL UNIQUE,
        refresh_fingerprint TEXT NOT NULL UNIQUE,
        ip_address TEXT,
        user_agent TEXT,
        device_fingerprint TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id, revoked)",
    """
    CREATE TABLE IF NOT EXISTS single_use_token (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        purpose TEXT NOT NULL,
        token_fingerprint TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        account_id TEXT,
        category TEXT NOT NULL,
        action TEXT NOT NULL,
        status TEXT NOT NULL,
        session_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_account_idx ON audit_event (account_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Every state transition that can race (lockout counters, token consumption,
    refresh-fingerprint replacement) is one ``UPDATE ... WHERE <prior state>``
    statement; the affected row count decides whether the caller won.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.warning("postgres_pool_timeout", timeout=self.timeout_seconds)
            raise BackendUnavailable(
                "timed out waiting for a database connection",
                {"timeout_seconds": self.timeout_seconds},
            ) from exc
        except errors.OperationalError as exc:
            # Covers statement_timeout (QueryCanceled) and dropped connections
            self.logger.warning("postgres_operational_error", error=str(exc))
            raise BackendUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        profile = safe_row_value(row, "profile")
        if isinstance(profile, str):
            profile = json.loads(profile)
        return Account(
            id=row["id"],
            email=row["email"],
            credential_hash=row["credential_hash"],
            salt=bytes(row["salt"]),
            is_verified=bool(row.get("is_verified")),
            is_active=bool(row.get("is_active", True)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            last_failed_login_at=ensure_utc(row.get("last_failed_login_at")),
            locked=bool(row.get("locked")),
            locked_until=ensure_utc(row.get("locked_until")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            last_login_at=ensure_utc(row.get("last_login_at")),
            password_changed_at=ensure_utc(row.get("password_changed_at")),
            profile=profile or {},
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            account_id=row["account_id"],
            access_fingerprint=row["access_fingerprint"],
            refresh_fingerprint=row["refresh_fingerprint"],
            created_at=ensure_utc(row["created_at"]),
            last_used_at=ensure_utc(row["last_used_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_fingerprint=row.get("device_fingerprint"),
            revoked=bool(row.get("revoked")),
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> SingleUseToken:
        return SingleUseToken(
            id=row["id"],
            account_id=row["account_id"],
            purpose=TokenPurpose(row["purpose"]),
            token_fingerprint=row["token_fingerprint"],
            expires_at=ensure_utc(row["expires_at"]),
            used=bool(row.get("used")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _row_to_audit_event(row: Dict[str, Any]) -> AuditEvent:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return AuditEvent(
            id=row["id"],
            account_id=row.get("account_id"),
            category=AuditCategory(row["category"]),
            action=row["action"],
            status=AuditStatus(row["status"]),
            session_id=row.get("session_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=metadata or {},
            timestamp=ensure_utc(row["created_at"]),
        )

    # -- accounts ----------------------------------------------------------

    def create_account(
        self,
        email: str,
        credential_hash: str,
        salt: bytes,
        *,
        profile: Optional[dict] = None,
        is_verified: bool = False,
    ) -> Account:
        account = Account(
            id=generate_uuid(),
            email=normalize_email(email),
            credential_hash=credential_hash,
            salt=bytes(salt),
            is_verified=is_verified,
            profile=dict(profile or {}),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, credential_hash, salt, is_verified, created_at, profile)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.credential_hash,
                        account.salt,
                        account.is_verified,
                        account.created_at,
                        json.dumps(account.profile) if account.profile else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def compare_and_set_lockout(
        self,
        account_id: str,
        expected: LockoutState,
        new: LockoutState,
        *,
        last_login_at: Optional[datetime] = None,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = %s,
                    locked = %s,
                    locked_until = %s,
                    last_failed_login_at = %s,
                    last_login_at = COALESCE(%s::timestamptz, last_login_at)
                WHERE id = %s
                  AND failed_login_attempts = %s
                  AND locked = %s
                  AND locked_until IS NOT DISTINCT FROM %s::timestamptz
                """,
                (
                    new.failed_login_attempts,
                    new.locked,
                    new.locked_until,
                    new.last_failed_login_at,
                    last_login_at,
                    account_id,
                    expected.failed_login_attempts,
                    expected.locked,
                    expected.locked_until,
                ),
            )
            return cur.rowcount == 1

    def update_credentials(
        self,
        account_id: str,
        credential_hash: str,
        *,
        salt: Optional[bytes] = None,
        changed_at: Optional[datetime] = None,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE account
                SET credential_hash = %s,
                    salt = COALESCE(%s, salt),
                    password_changed_at = %s,
                    failed_login_attempts = 0,
                    locked = FALSE,
                    locked_until = NULL
                WHERE id = %s
                """,
                (
                    credential_hash,
                    bytes(salt) if salt is not None else None,
                    changed_at or utcnow(),
                    account_id,
                ),
            )
            return cur.rowcount == 1

    def mark_account_verified(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE account SET is_verified = TRUE WHERE id = %s", (account_id,)
            )
            return cur.rowcount == 1

    def update_account_status(
        self, account_id: str, update: AccountStatusUpdate
    ) -> Optional[Account]:
        assignments: List[str] = []
        params: List[Any] = []
        if update.is_active is not None:
            assignments.append("is_active = %s")
            params.append(update.is_active)
        if update.is_verified is not None:
            assignments.append("is_verified = %s")
            params.append(update.is_verified)
        if update.account_locked is not None:
            assignments.append("locked = %s")
            params.append(update.account_locked)
            assignments.append("locked_until = %s")
            params.append(update.account_locked_until if update.account_locked else None)
            if not update.account_locked:
                assignments.append("failed_login_attempts = 0")
        elif update.account_locked_until is not None:
            assignments.append("locked_until = %s")
            params.append(update.account_locked_until)
        if update.reset_failed_login_attempts and "failed_login_attempts = 0" not in assignments:
            assignments.append("failed_login_attempts = 0")
        if not assignments:
            return self.get_account(account_id)
        params.append(account_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        return self._row_to_account(row) if row else None

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        ip_value = parse_ip_address(session.ip_address)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, account_id, access_fingerprint, refresh_fingerprint,
                        ip_address, user_agent, device_fingerprint,
                        created_at, last_used_at, expires_at, revoked
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.access_fingerprint,
                        session.refresh_fingerprint,
                        ip_value,
                        session.user_agent,
                        session.device_fingerprint,
                        session.created_at,
                        session.last_used_at,
                        session.expires_at,
                        session.revoked,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session identity already exists", {"field": "fingerprint"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for session", {"account_id": session.account_id}
            )
        session.ip_address = ip_value
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_active_session_by_refresh(
        self, refresh_fingerprint: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE refresh_fingerprint = %s AND revoked = FALSE AND expires_at > %s
                """,
                (refresh_fingerprint, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def update_session_access(
        self,
        session_id: str,
        *,
        expected_refresh_fingerprint: str,
        access_fingerprint: str,
        now: datetime,
        new_refresh_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
    ) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE auth_session
                    SET access_fingerprint = %s,
                        last_used_at = %s,
                        refresh_fingerprint = COALESCE(%s, refresh_fingerprint),
                        ip_address = COALESCE(%s, ip_address),
                        user_agent = COALESCE(%s, user_agent),
                        device_fingerprint = COALESCE(%s, device_fingerprint)
                    WHERE id = %s
                      AND refresh_fingerprint = %s
                      AND revoked = FALSE
                      AND expires_at > %s
                    """,
                    (
                        access_fingerprint,
                        now,
                        new_refresh_fingerprint,
                        parse_ip_address(ip_address),
                        user_agent,
                        device_fingerprint,
                        session_id,
                        expected_refresh_fingerprint,
                        now,
                    ),
                )
                return cur.rowcount == 1
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session fingerprint already exists", {"field": "fingerprint"}
            )

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s",
                (now, session_id),
            )

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET revoked = TRUE WHERE id = %s AND revoked = FALSE",
                (session_id,),
            )
            return cur.rowcount == 1

    def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE
                WHERE account_id = %s
                  AND revoked = FALSE
                  AND id IS DISTINCT FROM %s
                """,
                (account_id, except_session_id),
            )
            return cur.rowcount

    def list_sessions(
        self,
        account_id: str,
        *,
        now: Optional[datetime] = None,
        include_inactive: bool = False,
    ) -> List[Session]:
        if include_inactive:
            sql = "SELECT * FROM auth_session WHERE account_id = %s ORDER BY last_used_at DESC"
            params: tuple = (account_id,)
        else:
            sql = """
                SELECT * FROM auth_session
                WHERE account_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY last_used_at DESC
            """
            params = (account_id, now or utcnow())
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    # -- single-use tokens -------------------------------------------------

    def create_token(self, token: SingleUseToken) -> SingleUseToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO single_use_token (id, account_id, purpose, token_fingerprint, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.account_id,
                        token.purpose.value,
                        token.token_fingerprint,
                        token.expires_at,
                        token.used,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "token fingerprint already exists", {"field": "token_fingerprint"}
            )
        return token

    def supersede_tokens(self, account_id: str, purpose: TokenPurpose) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE single_use_token SET used = TRUE
                WHERE account_id = %s AND purpose = %s AND used = FALSE
                """,
                (account_id, purpose.value),
            )
            return cur.rowcount

    def find_token(
        self,
        purpose: TokenPurpose,
        token_fingerprint: str,
        now: datetime,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM single_use_token
                WHERE token_fingerprint = %s
                  AND purpose = %s
                  AND used = FALSE
                  AND expires_at > %s
                  AND (%s::text IS NULL OR account_id = %s)
                """,
                (token_fingerprint, purpose.value, now, account_id, account_id),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def consume_token(
        self,
        purpose: TokenPurpose,
        token_fingerprint: str,
        now: datetime,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE single_use_token SET used = TRUE
                WHERE token_fingerprint = %s
                  AND purpose = %s
                  AND used = FALSE
                  AND expires_at > %s
                  AND (%s::text IS NULL OR account_id = %s)
                RETURNING *
                """,
                (token_fingerprint, purpose.value, now, account_id, account_id),
            ).fetchone()
        return self._row_to_token(row) if row else None

    # -- audit and maintenance -----------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, account_id, category, action, status, session_id, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.account_id,
                    event.category.value,
                    event.action,
                    event.status.value,
                    event.session_id,
                    parse_ip_address(event.ip_address),
                    event.user_agent,
                    json.dumps(event.metadata, default=str) if event.metadata else None,
                    event.timestamp,
                ),
            )

    def list_audit_events(self, query: Optional[AuditQuery] = None) -> List[AuditEvent]:
        query = query or AuditQuery()
        clauses: List[str] = []
        params: List[Any] = []
        if query.account_id:
            clauses.append("account_id = %s")
            params.append(query.account_id)
        if query.category:
            clauses.append("category = %s")
            params.append(query.category.value)
        if query.status:
            clauses.append("status = %s")
            params.append(query.status.value)
        if query.since:
            clauses.append("created_at >= %s")
            params.append(query.since)
        if query.until:
            clauses.append("created_at < %s")
            params.append(query.until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(query.limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._row_to_audit_event(row) for row in rows]

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._connect() as conn:
            sessions = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            ).rowcount
            tokens = conn.execute(
                "DELETE FROM single_use_token WHERE expires_at <= %s", (now,)
            ).rowcount
        self.logger.info("expired_rows_purged", sessions=sessions, tokens=tokens)
        return {"sessions": sessions, "tokens": tokens}
