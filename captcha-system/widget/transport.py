"""Widget <-> challenge service calls.

``requests`` is blocking, so every call runs in the event loop's default
executor; the widget state machine only ever awaits the result.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import requests

from config.constants import REQUEST_TIMEOUT_S
from errors import NetworkFailure
from schemas import Challenge, GenerateResponse, RevealResponse, VerifyResponse

logger = logging.getLogger("captcha_widget.transport")

API_KEY_HEADER = "X-API-Key"


class Transport(ABC):
    """What the widget needs from the challenge service.

    Implementations raise ``NetworkFailure`` for transport-level problems
    (``retryable`` tells the retry policy whether to try again) and return
    semantic verification failures as ``VerifyResponse`` bodies.
    """

    api_key: Optional[str] = None

    @abstractmethod
    async def generate(self, challenge_type: str, difficulty: str) -> Challenge:
        ...

    @abstractmethod
    async def verify(self, payload: Dict[str, Any]) -> VerifyResponse:
        ...

    @abstractmethod
    async def reveal(self, challenge_id: str) -> RevealResponse:
        ...


class HttpTransport(Transport):
    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 timeout: float = REQUEST_TIMEOUT_S, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Tuple[int, Any]:
        url = f"{self.base_url}{path}"
        headers = {API_KEY_HEADER: self.api_key or ""}
        try:
            resp = self.session.request(method, url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NetworkFailure(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise NetworkFailure(f"{method} {path} returned {resp.status_code}", status_code=resp.status_code)

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400 and not isinstance(body, dict):
            raise NetworkFailure(f"{method} {path} returned {resp.status_code}",
                                 retryable=False, status_code=resp.status_code)
        return resp.status_code, body

    async def _call(self, method: str, path: str, payload: Optional[dict] = None) -> Tuple[int, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._request, method, path, payload))

    async def generate(self, challenge_type, difficulty):
        status, body = await self._call("POST", "/api/captcha/generate",
                                        {"type": challenge_type, "difficulty": difficulty})
        if status >= 400 or not isinstance(body, dict):
            error = body.get("error") if isinstance(body, dict) else None
            raise NetworkFailure(f"Challenge request rejected ({status}): {error}",
                                 retryable=False, status_code=status)

        result = GenerateResponse.model_validate(body)
        if not result.success or result.challenge is None:
            raise NetworkFailure(result.error or "Failed to fetch challenge", retryable=False, status_code=status)
        return result.challenge

    async def verify(self, payload):
        status, body = await self._call("POST", "/api/captcha/verify", payload)
        if not isinstance(body, dict) or "success" not in body:
            error = body.get("error") if isinstance(body, dict) else None
            raise NetworkFailure(f"Verification request rejected ({status}): {error}",
                                 retryable=False, status_code=status)
        return VerifyResponse.model_validate(body)

    async def reveal(self, challenge_id):
        status, body = await self._call("GET", f"/api/captcha/{challenge_id}/reveal")
        if status >= 400:
            raise NetworkFailure(f"Pattern reveal rejected ({status}): {body.get('error')}",
                                 retryable=False, status_code=status)
        return RevealResponse.model_validate(body)
