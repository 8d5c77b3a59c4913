from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Mapping, Optional

from keyward.storage.common import parse_ip_address

_FINGERPRINT_HEADERS = ("accept", "accept-language", "user-agent", "sec-ch-ua")
_MAX_USER_AGENT_LENGTH = 512


@dataclass(frozen=True)
class DeviceInfo:
    """Request metadata recorded on sessions and audit events.

    ``device_fingerprint`` is a non-secret correlation hash over a few stable
    request headers; it identifies "the same browser" loosely and is never
    used for authentication.
    """

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], remote_addr: Optional[str] = None
    ) -> "DeviceInfo":
        lowered = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        forwarded = lowered.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip() if forwarded else ""
        ip = parse_ip_address(first_hop) or parse_ip_address(remote_addr)
        user_agent = lowered.get("user-agent") or None
        if user_agent:
            user_agent = user_agent[:_MAX_USER_AGENT_LENGTH]
        return cls(
            ip_address=ip,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint(lowered),
        )


def device_fingerprint(headers: Mapping[str, str]) -> str:
    components = {name: headers.get(name, "") for name in _FINGERPRINT_HEADERS}
    encoded = json.dumps(components, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


UNKNOWN_DEVICE = DeviceInfo()
