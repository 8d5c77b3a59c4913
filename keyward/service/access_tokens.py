from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from keyward.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessToken:
    token: str
    jti: str
    expires_at: datetime


class AccessTokenCodec:
    """HS256-signed JWT access tokens bound to one session.

    Claims: ``iss``, ``aud``, ``sub`` (account id), ``sid`` (session id),
    ``jti``, ``exp`` and ``token_type="access"``. The embedded expiry is never
    later than the owning session's ``expires_at``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta = timedelta(hours=1),
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not secret:
            raise ValueError("access token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = leeway

    @classmethod
    def from_settings(cls, settings) -> "AccessTokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(
        self,
        account_id: str,
        session_id: str,
        *,
        session_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> AccessToken:
        now = now or datetime.now(timezone.utc)
        expires_at = min(now + self.ttl, session_expires_at)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account_id,
            "sid": session_id,
            "token_type": "access",
            "jti": jti,
            # Floor so the embedded second never lands after the session expiry
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return AccessToken(
            token=token,
            jti=jti,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any malformed or invalid token."""

        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if payload.get("token_type") != "access":
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
