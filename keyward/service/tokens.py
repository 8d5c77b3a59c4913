from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from keyward.logging import get_logger
from keyward.service.errors import StorageUnavailable, storage_errors
from keyward.storage.common import generate_uuid
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import SingleUseToken, TokenPurpose

logger = get_logger(__name__)

SINGLE_USE_TOKEN_BYTES = 32
_ISSUE_ATTEMPTS = 3

# Purposes whose tokens are only valid when presented together with the owner
_ACCOUNT_BOUND_PURPOSES = frozenset({TokenPurpose.EMAIL_VERIFICATION})


def fingerprint(secret: str) -> str:
    """One-way SHA-256 hex digest stored in place of a secret."""

    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_secret(nbytes: int = SINGLE_USE_TOKEN_BYTES) -> str:
    return secrets.token_hex(nbytes)


class TokenStore(Protocol):
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

    def mark_account_verified(self, account_id: str) -> bool: ...


class SingleUseTokenIssuer:
    """Issues and redeems purpose-scoped, time-boxed, single-use tokens.

    Only the fingerprint of a token is stored. Issuing a token marks every
    earlier unused token of the same account and purpose as used, so only the
    newest one is redeemable. Redemption is one conditional update at the
    store, which makes two concurrent redemptions of one token succeed at most
    once.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        ttls: Optional[Dict[TokenPurpose, timedelta]] = None,
    ) -> None:
        self.store = store
        self.ttls = {
            TokenPurpose.EMAIL_VERIFICATION: timedelta(hours=24),
            TokenPurpose.PASSWORD_RESET: timedelta(hours=1),
        }
        if ttls:
            self.ttls.update(ttls)

    @classmethod
    def from_settings(cls, store: TokenStore, settings) -> "SingleUseTokenIssuer":
        return cls(
            store,
            ttls={
                TokenPurpose.EMAIL_VERIFICATION: timedelta(
                    minutes=settings.email_verification_ttl_minutes
                ),
                TokenPurpose.PASSWORD_RESET: timedelta(
                    minutes=settings.password_reset_ttl_minutes
                ),
            },
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(
        self,
        account_id: str,
        purpose: TokenPurpose,
        ttl: Optional[timedelta] = None,
    ) -> str:
        """Create a token and return its opaque value; the value is not kept."""

        lifetime = ttl or self.ttls[purpose]
        with storage_errors("issue_token"):
            superseded = self.store.supersede_tokens(account_id, purpose)
            for attempt in range(_ISSUE_ATTEMPTS):
                opaque = generate_secret()
                now = self._now()
                record = SingleUseToken(
                    id=generate_uuid(),
                    account_id=account_id,
                    purpose=purpose,
                    token_fingerprint=fingerprint(opaque),
                    expires_at=now + lifetime,
                    created_at=now,
                )
                try:
                    self.store.create_token(record)
                except ConstraintViolation:
                    logger.warning(
                        "single_use_token_collision", token_purpose=purpose.value, attempt=attempt
                    )
                    continue
                logger.info(
                    "single_use_token_issued",
                    account_id=account_id,
                    token_purpose=purpose.value,
                    superseded=superseded,
                )
                return opaque
        raise StorageUnavailable("unable to allocate a unique single-use token")

    def _bound_account(self, purpose: TokenPurpose, account_id: Optional[str]) -> bool:
        return purpose not in _ACCOUNT_BOUND_PURPOSES or bool(account_id)

    def peek(
        self,
        purpose: TokenPurpose,
        presented: str,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]:
        """Look a token up without consuming it."""

        if not presented or not self._bound_account(purpose, account_id):
            return None
        with storage_errors("find_token"):
            return self.store.find_token(
                purpose, fingerprint(presented), self._now(), account_id=account_id
            )

    def redeem(
        self,
        purpose: TokenPurpose,
        presented: str,
        *,
        account_id: Optional[str] = None,
    ) -> Optional[SingleUseToken]:
        """Consume a token and return its record, or None.

        Wrong, expired, already-used and superseded tokens are all reported as
        None. Redeeming an email-verification token marks its account verified.
        """

        if not presented or not self._bound_account(purpose, account_id):
            return None
        with storage_errors("consume_token"):
            record = self.store.consume_token(
                purpose, fingerprint(presented), self._now(), account_id=account_id
            )
            if record and purpose is TokenPurpose.EMAIL_VERIFICATION:
                self.store.mark_account_verified(record.account_id)
        return record

    def consume(
        self,
        account_id: Optional[str],
        purpose: TokenPurpose,
        presented: str,
    ) -> bool:
        return self.redeem(purpose, presented, account_id=account_id) is not None
