from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import InvalidTokenError, TokenExpiredError
from sessionguard.storage.models import utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 48


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in_ms: int
    access_expires_at: datetime

    def to_public(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in_ms,
        }


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens.

    Access tokens are self-contained and never stored, so a valid one keeps
    working until its ``exp`` even after logout. Refresh tokens are random
    strings whose validity lives entirely in the credential store.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    def now(self) -> datetime:
        return self._clock()

    def new_refresh_token(self) -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    def issue(self, account_id: str) -> TokenPair:
        now = self.now()
        expires_at = now + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "token_type": "access",
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(payload),
            refresh_token=self.new_refresh_token(),
            expires_in_ms=int(self.access_ttl.total_seconds() * 1000),
            access_expires_at=expires_at,
        )

    def verify_access(self, token: str) -> str:
        """Return the account id the token was issued to."""
        payload = self._decode_jwt(token)
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise InvalidTokenError("Invalid token", error_code="INVALID_TOKEN")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid token", error_code="INVALID_TOKEN") from None
        if self.now().timestamp() > exp_ts:
            raise TokenExpiredError("Token expired", error_code="TOKEN_EXPIRED")
        return str(payload["sub"])

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: Optional[str]) -> dict[str, Any]:
        invalid = InvalidTokenError("Invalid token", error_code="INVALID_TOKEN")
        if not token or not isinstance(token, str):
            raise invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid from None

        # Pin the algorithm before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise invalid

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid from None
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise invalid
        return payload
