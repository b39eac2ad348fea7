from __future__ import annotations

import base64
import io
import re
from datetime import datetime
from typing import Optional

import pyotp
import qrcode

from rimadmin.config import Settings
from rimadmin.logging import get_logger

logger = get_logger(__name__)

_CODE_PATTERN = re.compile(r"^\d{6}$")


class OneTimeCodeEngine:
    """TOTP secrets, enrollment URIs and code checks (30 s step, 6 digits).

    Verification accepts the current step and one step either side to absorb
    authenticator clock drift. Passing ``at`` pins the clock, which keeps the
    check a pure function of (secret, code, time).
    """

    def __init__(self, settings: Settings) -> None:
        self.issuer = settings.totp_issuer

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=account, issuer_name=self.issuer)

    @staticmethod
    def qr_code_data_url(uri: str) -> str:
        image = qrcode.make(uri)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    @staticmethod
    def verify(secret: str, code: str, *, at: Optional[datetime] = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if not _CODE_PATTERN.match(code):
            return False
        try:
            return pyotp.TOTP(secret).verify(code, for_time=at, valid_window=1)
        except (ValueError, TypeError) as exc:
            # Malformed base32 secret
            logger.warning("totp_secret_invalid", error=str(exc))
            return False

    @staticmethod
    def current_code(secret: str, *, at: Optional[datetime] = None) -> str:
        totp = pyotp.TOTP(secret)
        return totp.at(at) if at else totp.now()
