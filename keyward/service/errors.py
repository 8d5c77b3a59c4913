from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from keyward.logging import get_logger
from keyward.storage.errors import BackendUnavailable

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for credential/session lifecycle failures.

    Every error carries a stable ``error_code`` and an HTTP-style
    ``status_code`` so a routing layer can translate it without inspecting the
    message. ``retryable`` marks transient backend conditions:
    - invalid_credentials (401)
    - account_locked (423)
    - already_exists (409)
    - invalid_salt (400)
    - invalid_refresh_token (401)
    - invalid_or_expired_token (400)
    - invalid_access_token (401)
    - forbidden (403)
    - not_found (404)
    - storage_unavailable (503, retryable)
    - hash_timeout (503, retryable)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidCredentials(ServiceError):
    """Unknown email or wrong pre-hash; the two are indistinguishable (401)."""

    status_code = 401
    error_code = "invalid_credentials"

    def __init__(
        self,
        message: str = "invalid credentials",
        *,
        remaining_attempts: Optional[int] = None,
    ) -> None:
        detail = {}
        if remaining_attempts is not None:
            detail["remaining_attempts"] = remaining_attempts
        super().__init__(message, detail=detail)
        self.remaining_attempts = remaining_attempts


class AccountLocked(ServiceError):
    """Login refused while the account is locked (423).

    ``until`` is only disclosed for temporary locks; a permanent lock has
    ``until=None``.
    """

    status_code = 423
    error_code = "account_locked"

    def __init__(
        self, message: str = "account locked", *, until: Optional[datetime] = None
    ) -> None:
        detail = {"locked_until": until.isoformat()} if until else {}
        super().__init__(message, detail=detail)
        self.until = until


class AlreadyExists(ServiceError):
    status_code = 409
    error_code = "already_exists"


class InvalidSalt(ServiceError):
    status_code = 400
    error_code = "invalid_salt"


class InvalidRefreshToken(ServiceError):
    status_code = 401
    error_code = "invalid_refresh_token"


class InvalidOrExpiredToken(ServiceError):
    status_code = 400
    error_code = "invalid_or_expired_token"


class InvalidAccessToken(ServiceError):
    status_code = 401
    error_code = "invalid_access_token"


class Forbidden(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    error_code = "not_found"


class StorageUnavailable(ServiceError):
    """The store did not answer within its time bound (503). Safe to retry."""

    status_code = 503
    error_code = "storage_unavailable"
    retryable = True


class HashTimeout(ServiceError):
    """The password hash did not finish within its time bound (503)."""

    status_code = 503
    error_code = "hash_timeout"
    retryable = True


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise backend timeouts and outages as :class:`StorageUnavailable`."""

    try:
        yield
    except BackendUnavailable as exc:
        logger.warning("storage_unavailable", operation=operation, error=exc.message)
        raise StorageUnavailable(
            "credential store unavailable",
            detail={"operation": operation, **exc.detail},
        ) from exc


__all__ = [
    "storage_errors",
    "ServiceError",
    "InvalidCredentials",
    "AccountLocked",
    "AlreadyExists",
    "InvalidSalt",
    "InvalidRefreshToken",
    "InvalidOrExpiredToken",
    "InvalidAccessToken",
    "Forbidden",
    "NotFound",
    "StorageUnavailable",
    "HashTimeout",
]
