from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, NoReturn, Optional, Protocol, Union

from keyward.logging import get_logger
from keyward.service.access_tokens import AccessTokenCodec
from keyward.service.audit import AuditEmitter
from keyward.service.devices import UNKNOWN_DEVICE, DeviceInfo
from keyward.service.errors import (
    AccountLocked,
    AlreadyExists,
    Forbidden,
    HashTimeout,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidRefreshToken,
    InvalidSalt,
    NotFound,
    StorageUnavailable,
    storage_errors,
)
from keyward.service.hasher import CredentialHasher
from keyward.service.lockout import AccessDecision, LockoutPolicy
from keyward.service.tokens import (
    SingleUseTokenIssuer,
    fingerprint,
    generate_secret,
)
from keyward.storage.common import normalize_email
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import (
    SALT_LENGTH,
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
)

logger = get_logger(__name__)

REFRESH_SECRET_BYTES = 40
_CAS_ATTEMPTS = 10
_ISSUE_ATTEMPTS = 3

SaltInput = Union[bytes, bytearray, memoryview, str]


class CredentialStore(Protocol):
    def create_account(
        self,
        email: str,
        credential_hash: str,
        salt: bytes,
        *,
        profile: Optional[dict] = None,
        is_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def compare_and_set_lockout(
        self,
        account_id: str,
        expected: LockoutState,
        new: LockoutState,
        *,
        last_login_at: Optional[datetime] = None,
    ) -> bool: ...

    def update_credentials(
        self,
        account_id: str,
        credential_hash: str,
        *,
        salt: Optional[bytes] = None,
        changed_at: Optional[datetime] = None,
    ) -> bool: ...

    def mark_account_verified(self, account_id: str) -> bool: ...

    def update_account_status(
        self, account_id: str, update: AccountStatusUpdate
    ) -> Optional[Account]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session_by_refresh(
        self, refresh_fingerprint: str, now: datetime
    ) -> Optional[Session]: ...

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
    ) -> bool: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_sessions(
        self,
        account_id: str,
        *,
        now: Optional[datetime] = None,
        include_inactive: bool = False,
    ) -> List[Session]: ...

    def create_token(self, token: SingleUseToken) -> SingleUseToken: ...

    def supersede_tokens(self, account_id: str, purpose: TokenPurpose) -> int: ...

    def find_token(
        self,
        purpose: TokenPurpose,
        token_fingerprint: str,
        now: datetime,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]: ...

    def consume_token(
        self,
        purpose: TokenPurpose,
        token_fingerprint: str,
        now: datetime,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]: ...

    def append_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(self, query: Optional[AuditQuery] = None) -> List[AuditEvent]: ...

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]: ...


@dataclass(frozen=True)
class SessionGrant:
    """Secrets handed to the client after login or registration.

    Neither ``access_token`` nor ``refresh_token`` is stored anywhere; the
    session only keeps their fingerprints.
    """

    account_id: str
    session_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    expires_at: datetime


@dataclass(frozen=True)
class Registration:
    account: Account
    grant: SessionGrant
    verification_token: str


@dataclass(frozen=True)
class RefreshedAccess:
    session_id: str
    access_token: str
    access_expires_at: datetime
    expires_at: datetime
    # Only set when refresh secrets rotate on every refresh
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class AuthContext:
    account_id: str
    session_id: str
    token_id: str
    expires_at: datetime


def _email_hash(email: str) -> str:
    return fingerprint(normalize_email(email))


class SessionLifecycleManager:
    """Registration, login, refresh, logout and revocation over one store.

    All public operations are synchronous and raise a
    :class:`keyward.service.errors.ServiceError` subclass on failure. Lockout
    counters are persisted with compare-and-set against the state a decision
    was computed from, so concurrent logins on one account never lose an
    update. Each outcome branch emits exactly one audit event.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: CredentialHasher,
        lockout: LockoutPolicy,
        tokens: SingleUseTokenIssuer,
        access_tokens: AccessTokenCodec,
        audit: AuditEmitter,
        *,
        session_ttl: timedelta = timedelta(days=7),
        rotate_refresh_tokens: bool = False,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.lockout = lockout
        self.tokens = tokens
        self.access_tokens = access_tokens
        self.audit = audit
        self.session_ttl = session_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _audit(
        self,
        category: AuditCategory,
        action: str,
        status: AuditStatus,
        *,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        **metadata,
    ) -> None:
        device = device or UNKNOWN_DEVICE
        self.audit.emit(
            category,
            action,
            status,
            account_id=account_id,
            session_id=session_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata=metadata,
        )

    @contextmanager
    def _audit_failure(
        self,
        action: str,
        *,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        **metadata,
    ) -> Iterator[None]:
        """Record a failed Auth event for a hash timeout or a bad salt, then re-raise."""

        try:
            yield
        except (HashTimeout, InvalidSalt) as exc:
            self._audit(
                AuditCategory.AUTH,
                action,
                AuditStatus.FAILED,
                account_id=account_id,
                session_id=session_id,
                device=device,
                reason=exc.error_code,
                **metadata,
            )
            raise

    @staticmethod
    def _coerce_salt(salt: SaltInput) -> bytes:
        if isinstance(salt, str):
            try:
                raw = bytes.fromhex(salt)
            except ValueError:
                raise InvalidSalt("salt must be hex encoded bytes")
        else:
            raw = bytes(salt)
        if len(raw) != SALT_LENGTH:
            raise InvalidSalt(
                f"salt must be exactly {SALT_LENGTH} bytes",
                detail={"length": len(raw)},
            )
        return raw

    # -- session issuance -------------------------------------------------

    def _issue_session(
        self, account: Account, device: DeviceInfo, now: datetime
    ) -> SessionGrant:
        for _ in range(_ISSUE_ATTEMPTS):
            session_id = str(uuid.uuid4())
            expires_at = now + self.session_ttl
            access = self.access_tokens.mint(
                account.id, session_id, session_expires_at=expires_at, now=now
            )
            refresh_secret = generate_secret(REFRESH_SECRET_BYTES)
            session = Session.new(
                account.id,
                access_fingerprint=fingerprint(access.token),
                refresh_fingerprint=fingerprint(refresh_secret),
                ttl=self.session_ttl,
                session_id=session_id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                device_fingerprint=device.device_fingerprint,
                now=now,
            )
            try:
                self.store.create_session(session)
            except ConstraintViolation as exc:
                self.logger.warning("session_create_collision", detail=exc.detail)
                continue
            return SessionGrant(
                account_id=account.id,
                session_id=session.id,
                access_token=access.token,
                access_expires_at=access.expires_at,
                refresh_token=refresh_secret,
                expires_at=session.expires_at,
            )
        raise StorageUnavailable("unable to allocate a unique session")

    # -- lockout persistence ------------------------------------------------

    def _reload(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise InvalidCredentials()
        return account

    def _transition_lockout(
        self,
        account: Account,
        now: datetime,
        transition: Callable[[AccessDecision], LockoutState],
        *,
        device: DeviceInfo,
        last_login_at: Optional[datetime] = None,
    ) -> LockoutState:
        """Persist a lockout transition, re-deciding on every lost race.

        A lock that appears between the first check and the write still wins:
        the caller gets :class:`AccountLocked` instead of a transition.
        """

        for _ in range(_CAS_ATTEMPTS):
            decision = self.lockout.check_access(account.lockout, now)
            if not decision.allowed:
                self._reject_locked(account, decision, device)
            new_state = transition(decision)
            if self.store.compare_and_set_lockout(
                account.id, account.lockout, new_state, last_login_at=last_login_at
            ):
                if decision.lazily_unlocked:
                    self.logger.info("account_lock_expired", account_id=account.id)
                return new_state
            account = self._reload(account.id)
        self.logger.warning("lockout_update_contended", account_id=account.id)
        raise StorageUnavailable(
            "account state is changing too quickly", detail={"account_id": account.id}
        )

    def _reject_locked(
        self, account: Account, decision: AccessDecision, device: DeviceInfo
    ) -> NoReturn:
        self._audit(
            AuditCategory.SECURITY,
            "account-locked",
            AuditStatus.FAILED,
            account_id=account.id,
            device=device,
            permanent=decision.until is None,
            locked_until=decision.until.isoformat() if decision.until else None,
        )
        raise AccountLocked(until=decision.until)

    # -- registration and login ---------------------------------------------

    def register(
        self,
        email: str,
        pre_hash: str,
        salt: SaltInput,
        profile: Optional[dict] = None,
        device: Optional[DeviceInfo] = None,
    ) -> Registration:
        device = device or UNKNOWN_DEVICE
        normalized = normalize_email(email)
        with storage_errors("register"):
            if self.store.get_account_by_email(normalized):
                self._audit(
                    AuditCategory.AUTH,
                    "register",
                    AuditStatus.FAILED,
                    device=device,
                    reason="email_taken",
                    email_hash=_email_hash(normalized),
                )
                raise AlreadyExists("an account with this email already exists")
            with self._audit_failure(
                "register", device=device, email_hash=_email_hash(normalized)
            ):
                salt_bytes = self._coerce_salt(salt)
                credential_hash = self.hasher.hash(pre_hash)
            try:
                account = self.store.create_account(
                    normalized, credential_hash, salt_bytes, profile=profile
                )
            except ConstraintViolation:
                self._audit(
                    AuditCategory.AUTH,
                    "register",
                    AuditStatus.FAILED,
                    device=device,
                    reason="email_taken",
                    email_hash=_email_hash(normalized),
                )
                raise AlreadyExists("an account with this email already exists")
            now = self._now()
            grant = self._issue_session(account, device, now)
            verification_token = self.tokens.issue(
                account.id, TokenPurpose.EMAIL_VERIFICATION
            )
        self._audit(
            AuditCategory.AUTH,
            "register",
            AuditStatus.SUCCESS,
            account_id=account.id,
            session_id=grant.session_id,
            device=device,
        )
        self.logger.info("account_registered", account_id=account.id)
        return Registration(
            account=account, grant=grant, verification_token=verification_token
        )

    def login(
        self, email: str, pre_hash: str, device: Optional[DeviceInfo] = None
    ) -> SessionGrant:
        device = device or UNKNOWN_DEVICE
        with storage_errors("login"):
            account = self.store.get_account_by_email(email)
            if account is None:
                # Same cost and same response shape as a wrong pre-hash
                with self._audit_failure(
                    "login", device=device, email_hash=_email_hash(email)
                ):
                    self.hasher.verify_dummy(pre_hash)
                self._audit(
                    AuditCategory.AUTH,
                    "login",
                    AuditStatus.FAILED,
                    device=device,
                    reason="unknown_email",
                    email_hash=_email_hash(email),
                )
                raise InvalidCredentials(
                    remaining_attempts=self.lockout.max_attempts - 1
                )

            now = self._now()
            decision = self.lockout.check_access(account.lockout, now)
            if not decision.allowed:
                self._reject_locked(account, decision, device)

            with self._audit_failure("login", account_id=account.id, device=device):
                verified = self.hasher.verify(account.credential_hash, pre_hash)
            if not verified:
                self._login_failed(account, now, device)

            if not account.is_active:
                self._audit(
                    AuditCategory.AUTH,
                    "login",
                    AuditStatus.FAILED,
                    account_id=account.id,
                    device=device,
                    reason="account_inactive",
                )
                raise InvalidCredentials(
                    remaining_attempts=self.lockout.remaining_attempts(decision.state)
                )

            self._transition_lockout(
                account,
                now,
                lambda d: self.lockout.on_success(d.state),
                device=device,
                last_login_at=now,
            )
            grant = self._issue_session(account, device, now)
        self._audit(
            AuditCategory.AUTH,
            "login",
            AuditStatus.SUCCESS,
            account_id=account.id,
            session_id=grant.session_id,
            device=device,
        )
        self.logger.info("login_succeeded", account_id=account.id, session_id=grant.session_id)
        return grant

    def _login_failed(self, account: Account, now: datetime, device: DeviceInfo) -> NoReturn:
        new_state = self._transition_lockout(
            account,
            now,
            lambda d: self.lockout.on_failed_attempt(d.state, now),
            device=device,
        )
        remaining = self.lockout.remaining_attempts(new_state)
        self._audit(
            AuditCategory.AUTH,
            "login",
            AuditStatus.FAILED,
            account_id=account.id,
            device=device,
            reason="invalid_credentials",
            remaining_attempts=remaining,
            locked=new_state.locked,
        )
        if new_state.locked:
            self.logger.warning(
                "account_locked_after_failures",
                account_id=account.id,
                locked_until=new_state.locked_until.isoformat() if new_state.locked_until else None,
            )
        raise InvalidCredentials(remaining_attempts=remaining)

    def get_salt(self, email: str) -> bytes:
        with storage_errors("get_salt"):
            account = self.store.get_account_by_email(email)
        if account is None:
            raise NotFound("account not found")
        return account.salt

    # -- session lifecycle ----------------------------------------------------

    def refresh(
        self, refresh_token: str, device: Optional[DeviceInfo] = None
    ) -> RefreshedAccess:
        device = device or UNKNOWN_DEVICE
        with storage_errors("refresh"):
            now = self._now()
            presented = fingerprint(refresh_token) if refresh_token else None
            session = (
                self.store.find_active_session_by_refresh(presented, now)
                if presented
                else None
            )
            if session is None:
                self._reject_refresh(device, reason="unknown_or_inactive")
            access = self.access_tokens.mint(
                session.account_id,
                session.id,
                session_expires_at=session.expires_at,
                now=now,
            )
            new_refresh = (
                generate_secret(REFRESH_SECRET_BYTES) if self.rotate_refresh_tokens else None
            )
            try:
                updated = self.store.update_session_access(
                    session.id,
                    expected_refresh_fingerprint=presented,
                    access_fingerprint=fingerprint(access.token),
                    now=now,
                    new_refresh_fingerprint=fingerprint(new_refresh) if new_refresh else None,
                    ip_address=device.ip_address,
                    user_agent=device.user_agent,
                    device_fingerprint=device.device_fingerprint,
                )
            except ConstraintViolation:
                updated = False
            if not updated:
                # Revoked, expired or rotated by a concurrent refresh
                self._reject_refresh(device, reason="lost_race", session_id=session.id)
        self._audit(
            AuditCategory.AUTH,
            "refresh",
            AuditStatus.SUCCESS,
            account_id=session.account_id,
            session_id=session.id,
            device=device,
            rotated=new_refresh is not None,
        )
        return RefreshedAccess(
            session_id=session.id,
            access_token=access.token,
            access_expires_at=access.expires_at,
            expires_at=session.expires_at,
            refresh_token=new_refresh,
        )

    def _reject_refresh(
        self, device: DeviceInfo, *, reason: str, session_id: Optional[str] = None
    ) -> NoReturn:
        self._audit(
            AuditCategory.SECURITY,
            "invalid-refresh-token",
            AuditStatus.FAILED,
            session_id=session_id,
            device=device,
            reason=reason,
        )
        raise InvalidRefreshToken("invalid or expired refresh token")

    def authenticate(
        self, access_token: str, device: Optional[DeviceInfo] = None
    ) -> AuthContext:
        """Resolve a bearer access token to its live session."""

        device = device or UNKNOWN_DEVICE
        claims = self.access_tokens.decode(access_token)
        if claims is None:
            self._reject_access(device, reason="malformed_or_expired")
        with storage_errors("authenticate"):
            now = self._now()
            session = self.store.get_session(claims["sid"])
            if (
                session is None
                or session.account_id != claims["sub"]
                or not session.is_usable(now)
                or session.access_fingerprint != fingerprint(access_token)
            ):
                self._reject_access(
                    device,
                    reason="session_mismatch",
                    account_id=claims["sub"],
                    session_id=claims["sid"],
                )
            self.store.touch_session(session.id, now)
        return AuthContext(
            account_id=session.account_id,
            session_id=session.id,
            token_id=claims.get("jti", ""),
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )

    def _reject_access(
        self,
        device: DeviceInfo,
        *,
        reason: str,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> NoReturn:
        self._audit(
            AuditCategory.SECURITY,
            "invalid-token",
            AuditStatus.FAILED,
            account_id=account_id,
            session_id=session_id,
            device=device,
            reason=reason,
        )
        raise InvalidAccessToken("invalid or expired access token")

    def logout(self, session_id: str, device: Optional[DeviceInfo] = None) -> None:
        """Revoke a session. Revoking an already-revoked session is a no-op."""

        device = device or UNKNOWN_DEVICE
        with storage_errors("logout"):
            session = self.store.get_session(session_id)
            if session is None:
                self._audit(
                    AuditCategory.AUTH,
                    "logout",
                    AuditStatus.FAILED,
                    session_id=session_id,
                    device=device,
                    reason="unknown_session",
                )
                return
            changed = self.store.revoke_session(session_id)
        self._audit(
            AuditCategory.AUTH,
            "logout",
            AuditStatus.SUCCESS,
            account_id=session.account_id,
            session_id=session_id,
            device=device,
            already_revoked=not changed,
        )

    def revoke_session(
        self,
        session_id: str,
        requesting_account_id: str,
        current_session_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> None:
        device = device or UNKNOWN_DEVICE
        if current_session_id and session_id == current_session_id:
            self._reject_revoke(
                session_id, requesting_account_id, device, reason="current_session"
            )
        with storage_errors("revoke_session"):
            session = self.store.get_session(session_id)
            if session is None or session.account_id != requesting_account_id:
                self._reject_revoke(
                    session_id, requesting_account_id, device, reason="not_owner"
                )
            self.store.revoke_session(session_id)
        self._audit(
            AuditCategory.SECURITY,
            "session-revoked",
            AuditStatus.SUCCESS,
            account_id=requesting_account_id,
            session_id=session_id,
            device=device,
        )

    def _reject_revoke(
        self,
        session_id: str,
        account_id: str,
        device: DeviceInfo,
        *,
        reason: str,
    ) -> NoReturn:
        self._audit(
            AuditCategory.SECURITY,
            "session-revoked",
            AuditStatus.FAILED,
            account_id=account_id,
            session_id=session_id,
            device=device,
            reason=reason,
        )
        if reason == "current_session":
            raise Forbidden("use logout to end the current session")
        raise Forbidden("session does not belong to this account")

    def revoke_all_other_sessions(
        self,
        account_id: str,
        current_session_id: Optional[str],
        device: Optional[DeviceInfo] = None,
    ) -> int:
        with storage_errors("revoke_all_other_sessions"):
            count = self.store.revoke_account_sessions(
                account_id, except_session_id=current_session_id
            )
        self._audit(
            AuditCategory.SECURITY,
            "sessions-revoked",
            AuditStatus.SUCCESS,
            account_id=account_id,
            session_id=current_session_id,
            device=device,
            revoked=count,
        )
        return count

    def list_sessions(self, account_id: str) -> List[Session]:
        """Active sessions for an account, most recently used first."""

        with storage_errors("list_sessions"):
            return self.store.list_sessions(account_id, now=self._now())

    # -- credentials --------------------------------------------------------

    def change_password(
        self,
        account_id: str,
        current_pre_hash: str,
        new_pre_hash: str,
        *,
        current_session_id: Optional[str] = None,
        new_salt: Optional[SaltInput] = None,
        device: Optional[DeviceInfo] = None,
    ) -> int:
        """Replace the credential and revoke every other session.

        Returns the number of sessions revoked.
        """

        device = device or UNKNOWN_DEVICE
        with storage_errors("change_password"):
            account = self.store.get_account(account_id)
            if account is None:
                self._audit(
                    AuditCategory.AUTH,
                    "password-change",
                    AuditStatus.FAILED,
                    account_id=account_id,
                    session_id=current_session_id,
                    device=device,
                    reason="unknown_account",
                )
                raise NotFound("account not found")
            with self._audit_failure(
                "password-change",
                account_id=account_id,
                session_id=current_session_id,
                device=device,
            ):
                verified = self.hasher.verify(account.credential_hash, current_pre_hash)
            if not verified:
                self._audit(
                    AuditCategory.AUTH,
                    "password-change",
                    AuditStatus.FAILED,
                    account_id=account_id,
                    session_id=current_session_id,
                    device=device,
                    reason="invalid_current_credential",
                )
                raise InvalidCredentials("current credential is incorrect")
            with self._audit_failure(
                "password-change",
                account_id=account_id,
                session_id=current_session_id,
                device=device,
            ):
                salt_bytes = self._coerce_salt(new_salt) if new_salt is not None else None
                new_hash = self.hasher.hash(new_pre_hash)
            self.store.update_credentials(
                account_id, new_hash, salt=salt_bytes, changed_at=self._now()
            )
            revoked = self.store.revoke_account_sessions(
                account_id, except_session_id=current_session_id
            )
        self._audit(
            AuditCategory.AUTH,
            "password-change",
            AuditStatus.SUCCESS,
            account_id=account_id,
            session_id=current_session_id,
            device=device,
            revoked_sessions=revoked,
        )
        return revoked

    def request_password_reset(
        self, email: str, device: Optional[DeviceInfo] = None
    ) -> Optional[str]:
        """Issue a reset token, or return None for an unknown email.

        The caller is expected to answer identically either way and deliver
        the token out of band.
        """

        with storage_errors("request_password_reset"):
            account = self.store.get_account_by_email(email)
            if account is None:
                self._audit(
                    AuditCategory.AUTH,
                    "password-reset-request",
                    AuditStatus.FAILED,
                    device=device,
                    reason="unknown_email",
                    email_hash=_email_hash(email),
                )
                return None
            token = self.tokens.issue(account.id, TokenPurpose.PASSWORD_RESET)
        self._audit(
            AuditCategory.AUTH,
            "password-reset-request",
            AuditStatus.SUCCESS,
            account_id=account.id,
            device=device,
        )
        return token

    def verify_password_reset_token(self, token: str) -> str:
        """Return the owning account id without consuming the token."""

        record = self.tokens.peek(TokenPurpose.PASSWORD_RESET, token)
        if record is None:
            raise InvalidOrExpiredToken("invalid or expired reset token")
        return record.account_id

    def complete_password_reset(
        self,
        token: str,
        new_pre_hash: str,
        *,
        new_salt: Optional[SaltInput] = None,
        device: Optional[DeviceInfo] = None,
    ) -> str:
        """Consume a reset token, store the new credential, end every session.

        The token is consumed before the credential is written, so a token can
        never be validated and then reused after a failed update.
        """

        with self._audit_failure("password-reset", device=device):
            salt_bytes = self._coerce_salt(new_salt) if new_salt is not None else None
            new_hash = self.hasher.hash(new_pre_hash)
        with storage_errors("complete_password_reset"):
            record = self.tokens.redeem(TokenPurpose.PASSWORD_RESET, token)
            if record is None:
                self._audit(
                    AuditCategory.AUTH,
                    "password-reset",
                    AuditStatus.FAILED,
                    device=device,
                    reason="invalid_or_expired_token",
                )
                raise InvalidOrExpiredToken("invalid or expired reset token")
            self.store.update_credentials(
                record.account_id, new_hash, salt=salt_bytes, changed_at=self._now()
            )
            revoked = self.store.revoke_account_sessions(record.account_id)
        self._audit(
            AuditCategory.AUTH,
            "password-reset",
            AuditStatus.SUCCESS,
            account_id=record.account_id,
            device=device,
            revoked_sessions=revoked,
        )
        return record.account_id

    # -- email verification ---------------------------------------------------

    def verify_email(
        self, account_id: str, token: str, device: Optional[DeviceInfo] = None
    ) -> None:
        record = self.tokens.redeem(
            TokenPurpose.EMAIL_VERIFICATION, token, account_id=account_id
        )
        if record is None:
            self._audit(
                AuditCategory.AUTH,
                "email-verification",
                AuditStatus.FAILED,
                account_id=account_id,
                device=device,
                reason="invalid_or_expired_token",
            )
            raise InvalidOrExpiredToken("invalid or expired verification token")
        self._audit(
            AuditCategory.AUTH,
            "email-verification",
            AuditStatus.SUCCESS,
            account_id=account_id,
            device=device,
        )

    def resend_verification(
        self, account_id: str, device: Optional[DeviceInfo] = None
    ) -> str:
        with storage_errors("resend_verification"):
            account = self.store.get_account(account_id)
            if account is None:
                raise NotFound("account not found")
            if account.is_verified:
                self._audit(
                    AuditCategory.AUTH,
                    "email-verification-resend",
                    AuditStatus.FAILED,
                    account_id=account_id,
                    device=device,
                    reason="already_verified",
                )
                raise AlreadyExists("email already verified")
            token = self.tokens.issue(account_id, TokenPurpose.EMAIL_VERIFICATION)
        self._audit(
            AuditCategory.AUTH,
            "email-verification-resend",
            AuditStatus.SUCCESS,
            account_id=account_id,
            device=device,
        )
        return token

    # -- administration -------------------------------------------------------

    def update_account_status(
        self,
        account_id: str,
        update: AccountStatusUpdate,
        *,
        actor_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> Account:
        """Apply an admin status update; deactivation also ends every session."""

        with storage_errors("update_account_status"):
            account = self.store.update_account_status(account_id, update)
            if account is None:
                self._audit(
                    AuditCategory.ADMIN,
                    "update-account-status",
                    AuditStatus.FAILED,
                    account_id=actor_id,
                    device=device,
                    target_account_id=account_id,
                    reason="unknown_account",
                )
                raise NotFound("account not found")
            revoked = 0
            if update.is_active is False:
                revoked = self.store.revoke_account_sessions(account_id)
        self._audit(
            AuditCategory.ADMIN,
            "update-account-status",
            AuditStatus.SUCCESS,
            account_id=actor_id,
            device=device,
            target_account_id=account_id,
            fields=update.changed_fields(),
            revoked_sessions=revoked,
        )
        return account

    def unlock_account(
        self,
        account_id: str,
        *,
        actor_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> Account:
        return self.update_account_status(
            account_id,
            AccountStatusUpdate(account_locked=False, reset_failed_login_attempts=True),
            actor_id=actor_id,
            device=device,
        )

    def list_audit_events(self, query: Optional[AuditQuery] = None) -> List[AuditEvent]:
        with storage_errors("list_audit_events"):
            return self.store.list_audit_events(query or AuditQuery())

    def purge_expired(self) -> Dict[str, int]:
        """Delete expired sessions and single-use tokens."""

        with storage_errors("purge_expired"):
            counts = self.store.purge_expired(self._now())
        self.logger.info("expired_credentials_purged", **counts)
        return counts
