from __future__ import annotations

import secrets
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from keyward.logging import get_logger
from keyward.service.errors import HashTimeout

logger = get_logger(__name__)

T = TypeVar("T")


class CredentialHasher:
    """Argon2id over a client-derived pre-hash.

    The server never sees a plaintext password: ``pre_hash`` is already the
    client's salted derivation, and it is hashed once more for storage.
    Hashing runs on a small worker pool so a call can be bounded by
    ``timeout_seconds``; an overrun raises :class:`HashTimeout` rather than
    being reported as a match or a mismatch.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 1,
        hash_length: int = 32,
        salt_length: int = 16,
        timeout_seconds: Optional[float] = 10.0,
        max_workers: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_length,
            salt_len=salt_length,
            type=Type.ID,
        )
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="keyward-hasher"
        )
        # Verified against when an account does not exist so the miss path
        # costs the same as a wrong pre-hash.
        self._dummy_hash = self._hasher.hash(secrets.token_hex(32))

    @classmethod
    def from_settings(cls, settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            hash_length=settings.argon2_hash_length,
            salt_length=settings.argon2_salt_length,
            timeout_seconds=settings.hash_timeout_seconds,
        )

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning(
                "credential_hash_timeout",
                operation=operation,
                timeout=self.timeout_seconds,
            )
            raise HashTimeout(
                "credential hashing timed out",
                detail={"operation": operation},
            ) from exc

    def hash(self, pre_hash: str) -> str:
        return self._run("hash", lambda: self._hasher.hash(pre_hash))

    def verify(self, stored_hash: str, pre_hash: str) -> bool:
        """Return True only on a definite match; malformed hashes are a mismatch."""

        def _verify() -> bool:
            try:
                return self._hasher.verify(stored_hash, pre_hash)
            except VerifyMismatchError:
                return False
            except (InvalidHash, VerificationError) as exc:
                logger.warning("credential_verify_error", error_type=type(exc).__name__)
                return False

        return self._run("verify", _verify)

    def verify_dummy(self, pre_hash: str) -> None:
        self.verify(self._dummy_hash, pre_hash)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def close(self) -> None:
        self._executor.shutdown(wait=False)
