"""Agent token verification against the platform."""

from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger()


@dataclass
class _Entry:
    valid: bool
    checked_at: float


class TokenCache:
    """Verification results keyed by token, expiring after ``ttl`` seconds."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}

    def get(self, token: str) -> Optional[bool]:
        entry = self._entries.get(token)
        if entry is None or self.clock() - entry.checked_at >= self.ttl:
            return None
        return entry.valid

    def last_known_valid(self, token: str) -> bool:
        """True if the token was ever verified valid, regardless of age."""
        entry = self._entries.get(token)
        return bool(entry and entry.valid)

    def put(self, token: str, valid: bool) -> None:
        self._entries[token] = _Entry(valid=valid, checked_at=self.clock())

    def clear(self) -> None:
        self._entries.clear()


class TokenVerifier:
    """Checks ``X-Agent-Token`` values.

    With a platform URL, tokens are verified remotely and cached. Without
    one, a configured static token is compared locally. With neither, every
    request is accepted (local development).
    """

    def __init__(
        self,
        platform_url: Optional[str] = None,
        static_token: Optional[str] = None,
        cache: Optional[TokenCache] = None,
        timeout_sec: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.platform_url = platform_url.rstrip("/") if platform_url else None
        self.static_token = static_token
        self.cache = cache or TokenCache()
        self.timeout_sec = timeout_sec
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.platform_url or self.static_token)

    async def verify(self, token: str) -> bool:
        if not self.platform_url:
            if not self.static_token:
                return True
            return hmac.compare_digest(token.encode(), self.static_token.encode())

        cached = self.cache.get(token)
        if cached is not None:
            return cached

        try:
            async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport) as client:
                resp = await client.post(f"{self.platform_url}/api/vps/verify-token", json={"token": token})
                resp.raise_for_status()
                valid = resp.json().get("valid") is True
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Token verification request failed", error=str(e))
            if self.cache.last_known_valid(token):
                logger.warning("Using cached token validation due to network error")
                return True
            return False

        self.cache.put(token, valid)
        return valid
