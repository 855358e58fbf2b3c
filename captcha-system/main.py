"""FastAPI application for the adaptive CAPTCHA challenge service.

Provides endpoints for generating challenges, verifying answers or behavior
data, revealing pattern sequences once, and redeeming verification tokens.
"""

import logging
import os
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.constants import (GENERATE_RATE_LIMIT, REVEAL_LEDGER_TTL_SECONDS,
                              STORE_QUERY_TIMEOUT_S, VERIFY_RATE_LIMIT)
from config.logging_config import configure_logging, get_trace_logger
from content_store import ContentStore, InMemoryContentStore, load_templates_from_yaml
from errors import (CaptchaError, ChallengeNotFound, ContentStoreUnavailable,
                    ErrorKind, InvalidChallengeType, Unauthorized)
from generate import ChallengeGenerator
from schemas import (ErrorResponse, GenerateRequest, GenerateResponse, RevealResponse,
                     TokenCheckRequest, TokenCheckResponse, VerifyRequest,
                     VerifyResponse)
from tokens import TokenIssuer
from verify import ChallengeVerifier

logger = logging.getLogger("captcha_system")

ERROR_STATUS = {
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_CHALLENGE_TYPE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CHALLENGE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONTENT_STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_response(status_code: int, error: str, kind: Optional[ErrorKind] = None,
                   headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Every failure leaves the service as ``{success: false, error, errorKind}``."""
    return JSONResponse(status_code=status_code, headers=headers,
                        content=ErrorResponse(error=error, errorKind=kind).model_dump(mode="json"))


class RevealLedger:
    """Remembers which pattern challenges have already been revealed."""

    def __init__(self, ttl: int = REVEAL_LEDGER_TTL_SECONDS):
        self.ttl = ttl
        self._revealed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def mark(self, challenge_id: str) -> bool:
        """Record a reveal; False if this challenge was already revealed."""
        now = time.time()
        with self._lock:
            for key in [k for k, exp in self._revealed.items() if exp <= now]:
                del self._revealed[key]
            if challenge_id in self._revealed:
                return False
            self._revealed[challenge_id] = now + self.ttl
            return True


def _env_list(name: str) -> list:
    return [item.strip() for item in os.environ.get(name, "").split(",") if item.strip()]


def create_app(store: Optional[ContentStore] = None, token_issuer: Optional[TokenIssuer] = None,
               api_keys: Optional[Iterable[str]] = None, rate_limit_enabled: bool = True,
               generate_limit: Optional[str] = None, verify_limit: Optional[str] = None,
               store_timeout: Optional[float] = None) -> FastAPI:
    """Build the service. Arguments left as None are read from the environment."""
    configure_logging(os.environ.get("CAPTCHA_LOG_DIR", "logs"))

    if store is None and os.environ.get("CAPTCHA_SEED_FILE"):
        store = InMemoryContentStore(load_templates_from_yaml(os.environ["CAPTCHA_SEED_FILE"]))
    if store is None:
        logger.warning("No content store configured; every challenge will be a synthetic default")

    allowed_keys = set(api_keys if api_keys is not None else _env_list("CAPTCHA_API_KEYS"))
    token_issuer = token_issuer or TokenIssuer(os.environ.get("CAPTCHA_TOKEN_SECRET"))
    generator = ChallengeGenerator(
        store, store_timeout if store_timeout is not None
        else float(os.environ.get("CAPTCHA_STORE_TIMEOUT_S", STORE_QUERY_TIMEOUT_S)))
    verifier = ChallengeVerifier(generator, token_issuer)
    reveal_ledger = RevealLedger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        generator.shutdown()

    # Rate limiter setup
    limiter = Limiter(key_func=get_remote_address, enabled=rate_limit_enabled)
    app = FastAPI(title="Adaptive CAPTCHA API", version="1.0.0", lifespan=lifespan)
    app.state.limiter = limiter
    app.state.generator = generator
    app.state.verifier = verifier

    @app.exception_handler(CaptchaError)
    async def captcha_error_handler(request: Request, exc: CaptchaError):
        status_code = ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST)
        logger.warning("%s %s -> %d %s: %s", request.method, request.url.path, status_code,
                       exc.kind.value if exc.kind else None, exc)
        return error_response(status_code, str(exc), exc.kind)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
        return error_response(422, f"Invalid request: {problems}")

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        logger.warning("Rate limit exceeded for %s on %s", get_remote_address(request), request.url.path)
        return error_response(status.HTTP_429_TOO_MANY_REQUESTS, f"Rate limit exceeded: {exc.detail}")

    frontend_origin = os.environ.get("FRONTEND_ORIGIN", "http://localhost:3000")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[frontend_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-API-Key"],
    )

    generate_limit = generate_limit or os.environ.get("CAPTCHA_RATE_LIMIT_GENERATE", GENERATE_RATE_LIMIT)
    verify_limit = verify_limit or os.environ.get("CAPTCHA_RATE_LIMIT_VERIFY", VERIFY_RATE_LIMIT)

    def require_api_key(request: Request, x_api_key: Optional[str] = Header(None)) -> str:
        if not x_api_key:
            logger.warning("Request without API key from %s", request.client.host if request.client else None)
            raise Unauthorized("API key is required")
        if allowed_keys and x_api_key not in allowed_keys:
            logger.warning("Request with unknown API key from %s", request.client.host if request.client else None)
            raise Unauthorized("Invalid API key")
        return x_api_key

    @app.post("/api/captcha/generate", response_model=GenerateResponse)
    @limiter.limit(generate_limit)
    async def generate_challenge(payload: GenerateRequest, request: Request, _: str = Depends(require_api_key)):
        """Generate a challenge of the requested type and difficulty.

        Never fails for data-availability reasons: an empty or unreachable
        content store degrades to a synthetic default challenge. An unknown
        type is a 400 with ``errorKind=InvalidChallengeType``.
        """
        challenge = await run_in_threadpool(generator.generate, payload.type, payload.difficulty)
        return GenerateResponse(success=True, challenge=challenge)

    @app.post("/api/captcha/verify", response_model=VerifyResponse)
    @limiter.limit(verify_limit)
    async def verify_challenge(payload: VerifyRequest, request: Request, _: str = Depends(require_api_key)):
        """Verify an answer (explicit mode) or behavior data (invisible mode).

        Failures come back as ``{success: false, error, errorKind}`` with 400
        (404 for unknown challenges); 503 means the store could not be read
        and the client may retry.
        """
        try:
            result = await run_in_threadpool(verifier.verify, payload)
        except ContentStoreUnavailable as e:
            get_trace_logger(payload.challengeId).error("Verification unavailable: %s", e)
            raise ContentStoreUnavailable("Verification temporarily unavailable") from e
        except InvalidChallengeType:
            raise
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        if not result.success:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump(mode="json"))
        return result

    @app.get("/api/captcha/{challenge_id}/reveal", response_model=RevealResponse)
    async def reveal_pattern(challenge_id: str, _: str = Depends(require_api_key)):
        """Serve a pattern challenge's sequence, once."""
        tlog = get_trace_logger(challenge_id)
        try:
            template = await run_in_threadpool(generator.lookup_template, challenge_id)
        except ContentStoreUnavailable as e:
            tlog.error("Pattern reveal unavailable: %s", e)
            raise ContentStoreUnavailable("Pattern temporarily unavailable") from e

        if template is None:
            raise ChallengeNotFound(f"Challenge not found: {challenge_id}")
        if template.challenge_type != "pattern":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a pattern challenge")

        if not reveal_ledger.mark(challenge_id):
            tlog.warning("Second reveal requested for pattern challenge")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Pattern already revealed")

        tlog.info("Pattern revealed")
        return RevealResponse(challengeId=challenge_id,
                              gridSize=int(template.content_data.get("gridSize", 3)),
                              sequence=list(template.content_data.get("pattern") or []))

    @app.post("/api/captcha/token/verify", response_model=TokenCheckResponse)
    async def redeem_token(payload: TokenCheckRequest, _: str = Depends(require_api_key)):
        """Validate a verification token and consume it."""
        result = token_issuer.check_and_redeem(payload.token)
        get_trace_logger(result.challengeId).info("Token check: valid=%s reason=%s", result.valid, result.reason)
        return result

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "templates": store.count() if store is not None else 0,
        }

    logger.info("CAPTCHA service configured (store=%s, rate_limit=%s)",
                type(store).__name__ if store is not None else None, rate_limit_enabled)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))
