"""Verification tokens: HMAC-signed, short-lived, redeemable once."""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional

from config.constants import TOKEN_TTL_SECONDS
from schemas import TokenCheckResponse

logger = logging.getLogger("captcha_system.tokens")


class TokenIssuer:
    """Mints and redeems verification tokens.

    A token is ``base64url(json(payload + sig))`` where ``sig`` is an
    HMAC-SHA256 over the sorted payload. The ``jti`` of every redeemed token
    is remembered until the token would have expired anyway.
    """

    def __init__(self, secret: Optional[str] = None, ttl: int = TOKEN_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        if not secret:
            secret = secrets.token_hex(32)
            logger.warning("No token secret configured; using an ephemeral one (tokens will not survive restarts)")
        self._secret = secret.encode()
        self.ttl = ttl
        self._clock = clock
        self._redeemed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _sign(self, payload: dict) -> str:
        body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._secret, body.encode(), hashlib.sha256).hexdigest()

    def issue(self, purpose: str, challenge_id: Optional[str] = None) -> str:
        now = int(self._clock())
        payload = {
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + self.ttl,
            "purpose": purpose,
            "challengeId": challenge_id,
        }
        payload["sig"] = self._sign(payload)
        return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()

    def _prune(self, now: float) -> None:
        expired = [jti for jti, exp in self._redeemed.items() if exp <= now]
        for jti in expired:
            del self._redeemed[jti]

    def check_and_redeem(self, token: str) -> TokenCheckResponse:
        """Validate signature and expiry, then burn the token."""
        try:
            decoded = json.loads(base64.urlsafe_b64decode(token.encode()).decode())
        except (binascii.Error, ValueError) as e:
            logger.info("Rejected malformed token: %s", e)
            return TokenCheckResponse(valid=False, reason="malformed")

        if not isinstance(decoded, dict):
            return TokenCheckResponse(valid=False, reason="malformed")

        sig = decoded.pop("sig", "")
        if not isinstance(sig, str) or not hmac.compare_digest(sig, self._sign(decoded)):
            return TokenCheckResponse(valid=False, reason="invalid_signature")

        now = self._clock()
        if now >= decoded.get("exp", 0):
            return TokenCheckResponse(valid=False, reason="expired")

        jti = decoded.get("jti")
        with self._lock:
            self._prune(now)
            if jti in self._redeemed:
                return TokenCheckResponse(valid=False, reason="already_redeemed")
            self._redeemed[jti] = decoded["exp"]

        return TokenCheckResponse(valid=True, purpose=decoded.get("purpose"),
                                  challengeId=decoded.get("challengeId"))
