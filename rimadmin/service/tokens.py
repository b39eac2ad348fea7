from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from rimadmin.config import Settings
from rimadmin.logging import get_logger
from rimadmin.storage.models import AdminUser, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenIssuer:
    """Mint and verify HS256 access/refresh tokens.

    Access and refresh tokens are signed with independent secrets, so a
    refresh token can never pass as an access token even if ``token_type``
    were tampered with.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._lifetimes = {
            ACCESS: settings.access_token_lifetime,
            REFRESH: settings.refresh_token_lifetime,
        }

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secrets[token_type], signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode_jwt(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None

        # Pin the algorithm so a forged "none"/RS256 header is rejected outright
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=token_type)
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=token_type)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if payload.get("token_type") != token_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def _claims(
        self, user: AdminUser, token_type: str, now: datetime
    ) -> dict[str, Any]:
        lifetime: timedelta = self._lifetimes[token_type]
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "token_type": token_type,
            # Distinct jti keeps two pairs minted in the same second from colliding
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + lifetime).timestamp()),
        }

    def issue(self, user: AdminUser, *, now: Optional[datetime] = None) -> dict[str, str]:
        """Return ``{token, refreshToken, expiresIn}`` for ``user``."""
        issued_at = now or utcnow()
        return {
            "token": self._encode_jwt(self._claims(user, ACCESS, issued_at), ACCESS),
            "refreshToken": self._encode_jwt(
                self._claims(user, REFRESH, issued_at), REFRESH
            ),
            "expiresIn": self.settings.jwt_expiration,
        }

    def verify_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, ACCESS)

    def verify_refresh(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, REFRESH)
