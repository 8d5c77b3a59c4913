"""Common storage utilities shared between memory and postgres implementations.

Both backends must agree on email normalization, timestamp handling and the
shape of stored IP addresses, otherwise a unique-email check or an expiry
comparison could behave differently depending on the configured store.
"""

from __future__ import annotations

import base64
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Optional


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_email(email: str) -> str:
    """Lowercase and strip an email so uniqueness is case-insensitive."""
    return (email or "").strip().lower()


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Parse IP address from various formats.

    Args:
        raw_ip: Raw IP address value (string, ipaddress object, or None)

    Returns:
        Canonical string form of the address, or None when absent or invalid
    """
    if raw_ip is None:
        return None
    if isinstance(raw_ip, str):
        stripped = raw_ip.strip()
        if not stripped:
            return None
        try:
            return str(ip_address(stripped))
        except ValueError:
            return None
    return str(raw_ip)


# ============================================================================
# TIMESTAMPS
# ============================================================================

def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return ``dt`` as an aware UTC datetime; naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def encode_salt(salt: bytes) -> str:
    return base64.b64encode(salt).decode("ascii")


def decode_salt(raw: str) -> bytes:
    return base64.b64decode(raw.encode("ascii"))


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())
