from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

SALT_LENGTH = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class AuditCategory(str, Enum):
    AUTH = "auth"
    DATA = "data"
    SECURITY = "security"
    ADMIN = "admin"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class LockoutState:
    """The lockout-relevant slice of an account row.

    ``locked`` with no ``locked_until`` is a permanent lock that only an admin
    can clear.
    """

    failed_login_attempts: int = 0
    locked: bool = False
    locked_until: Optional[datetime] = None
    last_failed_login_at: Optional[datetime] = None

    def cleared(self) -> "LockoutState":
        return replace(
            self, failed_login_attempts=0, locked=False, locked_until=None
        )


@dataclass
class Account:
    id: str
    email: str
    credential_hash: str
    salt: bytes
    is_verified: bool = False
    is_active: bool = True
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked: bool = False
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def lockout(self) -> LockoutState:
        return LockoutState(
            failed_login_attempts=self.failed_login_attempts,
            locked=self.locked,
            locked_until=self.locked_until,
            last_failed_login_at=self.last_failed_login_at,
        )

    def apply_lockout(self, state: LockoutState) -> None:
        self.failed_login_attempts = state.failed_login_attempts
        self.locked = state.locked
        self.locked_until = state.locked_until
        self.last_failed_login_at = state.last_failed_login_at


@dataclass
class Session:
    id: str
    account_id: str
    access_fingerprint: str
    refresh_fingerprint: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    revoked: bool = False

    @classmethod
    def new(
        cls,
        account_id: str,
        *,
        access_fingerprint: str,
        refresh_fingerprint: str,
        ttl: timedelta,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            account_id=account_id,
            access_fingerprint=access_fingerprint,
            refresh_fingerprint=refresh_fingerprint,
            created_at=now,
            last_used_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint,
        )

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class SingleUseToken:
    id: str
    account_id: str
    purpose: TokenPurpose
    token_fingerprint: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_redeemable(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class AuditEvent:
    category: AuditCategory
    action: str
    status: AuditStatus
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AccountStatusUpdate:
    """Admin-controlled account flags. ``None`` leaves a field untouched.

    Locking replaces ``locked_until`` with ``account_locked_until``, so a lock
    given no end time is permanent. Unlocking (``account_locked=False``) also
    clears ``locked_until`` and the failed-attempt counter.
    """

    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    account_locked: Optional[bool] = None
    account_locked_until: Optional[datetime] = None
    reset_failed_login_attempts: bool = False

    def changed_fields(self) -> list[str]:
        names = []
        if self.is_active is not None:
            names.append("is_active")
        if self.is_verified is not None:
            names.append("is_verified")
        if self.account_locked is not None:
            names.append("locked")
        if self.account_locked is not None or self.account_locked_until is not None:
            names.append("locked_until")
        if self.reset_failed_login_attempts:
            names.append("failed_login_attempts")
        return names

    def apply(self, account: Account) -> None:
        if self.is_active is not None:
            account.is_active = self.is_active
        if self.is_verified is not None:
            account.is_verified = self.is_verified
        if self.account_locked is not None:
            account.locked = self.account_locked
            # A lock without an end time is permanent
            account.locked_until = self.account_locked_until if self.account_locked else None
            if not self.account_locked:
                account.failed_login_attempts = 0
        elif self.account_locked_until is not None:
            account.locked_until = self.account_locked_until
        if self.reset_failed_login_attempts:
            account.failed_login_attempts = 0


@dataclass(frozen=True)
class AuditQuery:
    account_id: Optional[str] = None
    category: Optional[AuditCategory] = None
    status: Optional[AuditStatus] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 100

    def matches(self, event: AuditEvent) -> bool:
        if self.account_id and event.account_id != self.account_id:
            return False
        if self.category and event.category != self.category:
            return False
        if self.status and event.status != self.status:
            return False
        if self.since and event.timestamp < self.since:
            return False
        if self.until and event.timestamp >= self.until:
            return False
        return True
