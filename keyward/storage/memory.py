from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from keyward.logging import get_logger
from keyward.storage.common import (
    decode_salt,
    deserialize_datetime,
    encode_salt,
    generate_uuid,
    normalize_email,
    parse_ip_address,
    serialize_datetime,
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


class MemoryStore:
    """In-process credential store for tests and single-instance deployments.

    Every read returns a copy, so callers never hold a reference into the
    store's own rows. Conditional updates compare against the stored row while
    the data lock is held, which gives the same compare-and-set semantics the
    Postgres store gets from ``UPDATE ... WHERE``.
    """

    def __init__(
        self, fs_root: Optional[str] = None, *, lock_timeout: float = 5.0
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[str, SingleUseToken] = {}
        self.audit_events: List[AuditEvent] = []
        self.lock_timeout = lock_timeout
        # RLock so persistence helpers can run inside an already-held lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.lock_timeout):
            raise BackendUnavailable(
                "memory store lock acquisition timed out",
                {"timeout_seconds": self.lock_timeout},
            )
        try:
            yield
        finally:
            self._data_lock.release()

    @contextmanager
    def _writing(self) -> Iterator[None]:
        """Hold the data lock for a mutation; undo it if the snapshot cannot be saved."""

        with self._locked():
            if self.fs_root is None:
                yield
                return
            backup = (
                copy.deepcopy(self.accounts),
                copy.deepcopy(self.sessions),
                copy.deepcopy(self.tokens),
                list(self.audit_events),
            )
            try:
                yield
            except BackendUnavailable:
                self.accounts, self.sessions, self.tokens, self.audit_events = backup
                raise

    # -- accounts ---------------------------------------------------------

    def create_account(
        self,
        email: str,
        credential_hash: str,
        salt: bytes,
        *,
        profile: Optional[dict] = None,
        is_verified: bool = False,
    ) -> Account:
        normalized = normalize_email(email)
        with self._writing():
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=generate_uuid(),
                email=normalized,
                credential_hash=credential_hash,
                salt=bytes(salt),
                is_verified=is_verified,
                profile=dict(profile or {}),
            )
            self.accounts[account.id] = account
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._locked():
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._locked():
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return copy.deepcopy(account) if account else None

    def compare_and_set_lockout(
        self,
        account_id: str,
        expected: LockoutState,
        new: LockoutState,
        *,
        last_login_at: Optional[datetime] = None,
    ) -> bool:
        with self._writing():
            account = self.accounts.get(account_id)
            if not account:
                return False
            current = account.lockout
            if (
                current.failed_login_attempts != expected.failed_login_attempts
                or current.locked != expected.locked
                or current.locked_until != expected.locked_until
            ):
                return False
            account.apply_lockout(new)
            if last_login_at is not None:
                account.last_login_at = last_login_at
            self._persist_state()
            return True

    def update_credentials(
        self,
        account_id: str,
        credential_hash: str,
        *,
        salt: Optional[bytes] = None,
        changed_at: Optional[datetime] = None,
    ) -> bool:
        with self._writing():
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.credential_hash = credential_hash
            if salt is not None:
                account.salt = bytes(salt)
            account.password_changed_at = changed_at or utcnow()
            account.apply_lockout(LockoutState())
            self._persist_state()
            return True

    def mark_account_verified(self, account_id: str) -> bool:
        with self._writing():
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.is_verified = True
            self._persist_state()
            return True

    def update_account_status(
        self, account_id: str, update: AccountStatusUpdate
    ) -> Optional[Account]:
        with self._writing():
            account = self.accounts.get(account_id)
            if not account:
                return None
            update.apply(account)
            self._persist_state()
            return copy.deepcopy(account)

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._writing():
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            for existing in self.sessions.values():
                if existing.refresh_fingerprint == session.refresh_fingerprint:
                    raise ConstraintViolation(
                        "refresh fingerprint already exists",
                        {"field": "refresh_fingerprint"},
                    )
                if existing.access_fingerprint == session.access_fingerprint:
                    raise ConstraintViolation(
                        "access fingerprint already exists",
                        {"field": "access_fingerprint"},
                    )
            stored = copy.deepcopy(session)
            stored.ip_address = parse_ip_address(stored.ip_address)
            self.sessions[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._locked():
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def find_active_session_by_refresh(
        self, refresh_fingerprint: str, now: datetime
    ) -> Optional[Session]:
        with self._locked():
            for session in self.sessions.values():
                if session.refresh_fingerprint == refresh_fingerprint:
                    return copy.deepcopy(session) if session.is_usable(now) else None
            return None

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
        with self._writing():
            session = self.sessions.get(session_id)
            if (
                not session
                or not session.is_usable(now)
                or session.refresh_fingerprint != expected_refresh_fingerprint
            ):
                return False
            session.access_fingerprint = access_fingerprint
            session.last_used_at = now
            if new_refresh_fingerprint is not None:
                session.refresh_fingerprint = new_refresh_fingerprint
            if ip_address is not None:
                session.ip_address = parse_ip_address(ip_address)
            if user_agent is not None:
                session.user_agent = user_agent
            if device_fingerprint is not None:
                session.device_fingerprint = device_fingerprint
            self._persist_state()
            return True

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._writing():
            session = self.sessions.get(session_id)
            if session:
                session.last_used_at = now
                self._persist_state()

    def revoke_session(self, session_id: str) -> bool:
        with self._writing():
            session = self.sessions.get(session_id)
            if not session or session.revoked:
                return False
            session.revoked = True
            self._persist_state()
            return True

    def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._writing():
            count = 0
            for session in self.sessions.values():
                if session.account_id != account_id or session.revoked:
                    continue
                if except_session_id and session.id == except_session_id:
                    continue
                session.revoked = True
                count += 1
            if count:
                self._persist_state()
            return count

    def list_sessions(
        self,
        account_id: str,
        *,
        now: Optional[datetime] = None,
        include_inactive: bool = False,
    ) -> List[Session]:
        now = now or utcnow()
        with self._locked():
            results = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.account_id == account_id and (include_inactive or s.is_usable(now))
            ]
        return sorted(results, key=lambda s: s.last_used_at, reverse=True)

    # -- single-use tokens -------------------------------------------------

    def create_token(self, token: SingleUseToken) -> SingleUseToken:
        with self._writing():
            if any(
                t.token_fingerprint == token.token_fingerprint
                for t in self.tokens.values()
            ):
                raise ConstraintViolation(
                    "token fingerprint already exists", {"field": "token_fingerprint"}
                )
            self.tokens[token.id] = copy.deepcopy(token)
            self._persist_state()
            return copy.deepcopy(token)

    def supersede_tokens(self, account_id: str, purpose: TokenPurpose) -> int:
        with self._writing():
            count = 0
            for token in self.tokens.values():
                if token.account_id == account_id and token.purpose == purpose and not token.used:
                    token.used = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def _match_token(
        self,
        purpose: TokenPurpose,
        token_fingerprint: str,
        now: datetime,
        account_id: Optional[str],
    ) -> Optional[SingleUseToken]:
        for token in self.tokens.values():
            if token.token_fingerprint != token_fingerprint or token.purpose != purpose:
                continue
            if account_id is not None and token.account_id != account_id:
                return None
            return token if token.is_redeemable(now) else None
        return None

    def find_token(
        self,
        purpose: TokenPurpose,
        token_fingerprint: str,
        now: datetime,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]:
        with self._locked():
            token = self._match_token(purpose, token_fingerprint, now, account_id)
            return copy.deepcopy(token) if token else None

    def consume_token(
        self,
        purpose: TokenPurpose,
        token_fingerprint: str,
        now: datetime,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]:
        with self._writing():
            token = self._match_token(purpose, token_fingerprint, now, account_id)
            if not token:
                return None
            token.used = True
            self._persist_state()
            return copy.deepcopy(token)

    # -- audit and maintenance ---------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._writing():
            self.audit_events.append(copy.deepcopy(event))
            self._persist_state()

    def list_audit_events(self, query: Optional[AuditQuery] = None) -> List[AuditEvent]:
        query = query or AuditQuery()
        with self._locked():
            matched = [copy.deepcopy(e) for e in self.audit_events if query.matches(e)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[: query.limit]

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._writing():
            expired_sessions = [
                sid for sid, s in self.sessions.items() if s.expires_at <= now
            ]
            for sid in expired_sessions:
                del self.sessions[sid]
            expired_tokens = [
                tid for tid, t in self.tokens.items() if t.expires_at <= now
            ]
            for tid in expired_tokens:
                del self.tokens[tid]
            if expired_sessions or expired_tokens:
                self._persist_state()
        return {"sessions": len(expired_sessions), "tokens": len(expired_tokens)}

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        try:
            path = self._state_path()
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise BackendUnavailable(
                "failed to persist in-memory state", {"error": str(exc)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_account(account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "credential_hash": account.credential_hash,
            "salt": encode_salt(account.salt),
            "is_verified": account.is_verified,
            "is_active": account.is_active,
            "failed_login_attempts": account.failed_login_attempts,
            "last_failed_login_at": serialize_datetime(account.last_failed_login_at),
            "locked": account.locked,
            "locked_until": serialize_datetime(account.locked_until),
            "created_at": serialize_datetime(account.created_at),
            "last_login_at": serialize_datetime(account.last_login_at),
            "password_changed_at": serialize_datetime(account.password_changed_at),
            "profile": account.profile,
        }

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            credential_hash=data["credential_hash"],
            salt=decode_salt(data["salt"]),
            is_verified=data.get("is_verified", False),
            is_active=data.get("is_active", True),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            last_failed_login_at=deserialize_datetime(data.get("last_failed_login_at")),
            locked=data.get("locked", False),
            locked_until=deserialize_datetime(data.get("locked_until")),
            created_at=deserialize_datetime(data.get("created_at")) or utcnow(),
            last_login_at=deserialize_datetime(data.get("last_login_at")),
            password_changed_at=deserialize_datetime(data.get("password_changed_at")),
            profile=data.get("profile") or {},
        )

    @staticmethod
    def _serialize_session(session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "access_fingerprint": session.access_fingerprint,
            "refresh_fingerprint": session.refresh_fingerprint,
            "created_at": serialize_datetime(session.created_at),
            "last_used_at": serialize_datetime(session.last_used_at),
            "expires_at": serialize_datetime(session.expires_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "device_fingerprint": session.device_fingerprint,
            "revoked": session.revoked,
        }

    @staticmethod
    def _deserialize_session(data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            access_fingerprint=data["access_fingerprint"],
            refresh_fingerprint=data["refresh_fingerprint"],
            created_at=deserialize_datetime(data["created_at"]),
            last_used_at=deserialize_datetime(data["last_used_at"]),
            expires_at=deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_fingerprint=data.get("device_fingerprint"),
            revoked=data.get("revoked", False),
        )

    @staticmethod
    def _serialize_token(token: SingleUseToken) -> dict:
        return {
            "id": token.id,
            "account_id": token.account_id,
            "purpose": token.purpose.value,
            "token_fingerprint": token.token_fingerprint,
            "expires_at": serialize_datetime(token.expires_at),
            "used": token.used,
            "created_at": serialize_datetime(token.created_at),
        }

    @staticmethod
    def _deserialize_token(data: dict) -> SingleUseToken:
        return SingleUseToken(
            id=data["id"],
            account_id=data["account_id"],
            purpose=TokenPurpose(data["purpose"]),
            token_fingerprint=data["token_fingerprint"],
            expires_at=deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            created_at=deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _serialize_audit_event(event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "category": event.category.value,
            "action": event.action,
            "status": event.status.value,
            "account_id": event.account_id,
            "session_id": event.session_id,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "metadata": event.metadata,
            "timestamp": serialize_datetime(event.timestamp),
        }

    @staticmethod
    def _deserialize_audit_event(data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            category=AuditCategory(data["category"]),
            action=data["action"],
            status=AuditStatus(data["status"]),
            account_id=data.get("account_id"),
            session_id=data.get("session_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata") or {},
            timestamp=deserialize_datetime(data["timestamp"]),
        )
