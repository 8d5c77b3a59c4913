from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from keyward.storage.models import LockoutState


class AccessVerdict(str, Enum):
    ALLOWED = "allowed"
    TEMPORARILY_LOCKED = "temporarily_locked"
    PERMANENTLY_LOCKED = "permanently_locked"


@dataclass(frozen=True)
class AccessDecision:
    verdict: AccessVerdict
    state: LockoutState
    until: Optional[datetime] = None
    lazily_unlocked: bool = False

    @property
    def allowed(self) -> bool:
        return self.verdict is AccessVerdict.ALLOWED


class LockoutPolicy:
    """Pure lockout transitions over :class:`LockoutState`.

    Nothing here touches storage; the caller persists a transition with a
    compare-and-set against the state it was computed from.
    """

    def __init__(self, max_attempts: int = 5, lock_duration_minutes: int = 15) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if lock_duration_minutes < 1:
            raise ValueError("lock_duration_minutes must be at least 1")
        self.max_attempts = max_attempts
        self.lock_duration = timedelta(minutes=lock_duration_minutes)

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.max_login_attempts,
            lock_duration_minutes=settings.lock_duration_minutes,
        )

    def on_failed_attempt(self, state: LockoutState, now: datetime) -> LockoutState:
        attempts = state.failed_login_attempts + 1
        if attempts >= self.max_attempts:
            return LockoutState(
                failed_login_attempts=attempts,
                locked=True,
                locked_until=now + self.lock_duration,
                last_failed_login_at=now,
            )
        return LockoutState(
            failed_login_attempts=attempts,
            locked=state.locked,
            locked_until=state.locked_until,
            last_failed_login_at=now,
        )

    def on_success(self, state: LockoutState) -> LockoutState:
        return state.cleared()

    def check_access(self, state: LockoutState, now: datetime) -> AccessDecision:
        if not state.locked:
            return AccessDecision(AccessVerdict.ALLOWED, state)
        if state.locked_until is None:
            return AccessDecision(AccessVerdict.PERMANENTLY_LOCKED, state)
        if state.locked_until > now:
            return AccessDecision(
                AccessVerdict.TEMPORARILY_LOCKED, state, until=state.locked_until
            )
        # Expired window: unlock and start counting from zero again.
        return AccessDecision(
            AccessVerdict.ALLOWED, state.cleared(), lazily_unlocked=True
        )

    def remaining_attempts(self, state: LockoutState) -> int:
        return max(0, self.max_attempts - state.failed_login_attempts)
