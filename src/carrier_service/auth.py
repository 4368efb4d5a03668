from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections import defaultdict, deque
from typing import Any, Callable

from fastapi import HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Probes stay reachable for orchestrators that cannot send keys or back off.
UNLIMITED_PATHS = frozenset({"/health", "/healthz", "/ready"})


class APIKeyAuth:
    """FastAPI dependency checking ``X-API-Key`` against configured keys.

    Only SHA-256 digests of the keys are held. With no keys configured every
    request is accepted, which is the local development setup.
    """

    def __init__(self, allowed_keys: list[str] | None = None) -> None:
        self._digests = [self._digest(k.strip()) for k in (allowed_keys or []) if k.strip()]

    @property
    def enabled(self) -> bool:
        return bool(self._digests)

    @staticmethod
    def _digest(key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def validate(self, api_key: str | None) -> bool:
        if not self.enabled:
            return True
        if not api_key:
            return False
        candidate = self._digest(api_key)
        return any(hmac.compare_digest(candidate, digest) for digest in self._digests)

    async def __call__(self, api_key: str | None = Security(_api_key_header)) -> str | None:
        if not self.enabled:
            return None
        if not self.validate(api_key):
            logger.warning("Rejected request with invalid API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API key",
            )
        return api_key


class RateLimiter:
    """Sliding one-minute window per client IP, kept in process memory."""

    def __init__(self, requests_per_minute: int = 120, clock: Callable[[], float] = time.monotonic) -> None:
        self.rpm = requests_per_minute
        self._clock = clock
        self._windows: dict[str, deque[float]] = defaultdict(deque)

    @property
    def enabled(self) -> bool:
        return self.rpm > 0

    def check(self, client_ip: str) -> bool:
        if not self.enabled:
            return True
        now = self._clock()
        window = self._windows[client_ip]
        while window and window[0] <= now - 60.0:
            window.popleft()
        if len(window) >= self.rpm:
            return False
        window.append(now)
        return True

    async def middleware(self, request: Request, call_next: Any) -> Any:
        if not self.enabled or request.url.path in UNLIMITED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if not self.check(client_ip):
            logger.warning("Rate limit exceeded for %s", client_ip)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)
