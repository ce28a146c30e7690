"""
ACCESS GATE MODULE
==================

Checks a user's token against the quota service before a turn runs, and charges the
turn's token usage afterwards.

QUOTA SERVICE:
  POST /tokens           {"utoken": ...}                      -> {"tokens": <remaining>}
  POST /tokens/decrease  {"utoken": ..., "decrement_by": n}   -> ignored

CHECK:
  - A positive answer is cached for about a minute (QUOTA_CACHE_TTL) so a chatty user does
    not cost a quota round-trip per message. The quota service stays the source of truth.
  - A non-success status or remaining <= 0 means "insufficient quota" (402 to the client).
  - A transport failure (after retries) is an UpstreamError (500 to the client).

DECREMENT:
  Fire and forget. Runs as a background task after the response is ready; failures are
  logged and never retried or shown to the user.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Set

import httpx

from app.errors import UpstreamError
from app.services.cache import MISS, TTLCache
from app.utils.retry import with_retry
from app.utils.text import mask_token
from config import HTTP_TIMEOUT, QUOTA_API_URL, QUOTA_CACHE_TTL


logger = logging.getLogger("SAGE")

INSUFFICIENT_QUOTA = "insufficient_quota"


@dataclass
class AccessDecision:
    allowed: bool
    remaining: int = 0
    reason: Optional[str] = None
    cached: bool = False


class AccessGate:
    """Quota check + best-effort usage decrement for user tokens."""

    def __init__(
        self,
        base_url: str = QUOTA_API_URL,
        token_cache: Optional[TTLCache] = None,
        timeout: float = HTTP_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.token_cache = token_cache if token_cache is not None else TTLCache(QUOTA_CACHE_TTL)
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        # Strong references so pending decrements are not garbage collected mid-flight.
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------------------
    # CHECK
    # ------------------------------------------------------------------------------

    async def check(self, token: str) -> AccessDecision:
        """Decide whether the token may run a turn."""
        cached = self.token_cache.get(token)
        if cached is not MISS and cached > 0:
            return AccessDecision(allowed=True, remaining=cached, cached=True)

        async def _post():
            return await self._client.post("/tokens", json={"utoken": token})

        try:
            response = await with_retry(_post, max_retries=2, initial_delay=0.5, retry_on=(httpx.TransportError,))
        except httpx.TimeoutException as e:
            raise UpstreamError("Quota service timed out", 504, service="quota") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Quota service unreachable: {e}", 502, service="quota") from e

        if not response.is_success:
            logger.info("Quota check for %s refused (HTTP %s)", mask_token(token), response.status_code)
            return AccessDecision(allowed=False, remaining=0, reason=INSUFFICIENT_QUOTA)

        try:
            remaining = int(response.json().get("tokens", 0))
        except (ValueError, TypeError, AttributeError) as e:
            raise UpstreamError("Quota service sent an unreadable response", 502, service="quota") from e

        if remaining <= 0:
            logger.info("Quota exhausted for %s", mask_token(token))
            return AccessDecision(allowed=False, remaining=remaining, reason=INSUFFICIENT_QUOTA)

        self.token_cache.set(token, remaining)
        return AccessDecision(allowed=True, remaining=remaining)

    # ------------------------------------------------------------------------------
    # DECREMENT
    # ------------------------------------------------------------------------------

    def decrement(self, token: str, amount: int) -> Optional[asyncio.Task]:
        """Schedule a usage decrement and return immediately. Returns the task (None if nothing to charge)."""
        if amount <= 0:
            return None

        # Keep the local view roughly right until the cached entry expires.
        cached = self.token_cache.get(token)
        if cached is not MISS:
            if cached - amount > 0:
                self.token_cache.set(token, cached - amount)
            else:
                self.token_cache.delete(token)

        task = asyncio.create_task(self._send_decrement(token, amount))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send_decrement(self, token: str, amount: int) -> None:
        try:
            response = await self._client.post(
                "/tokens/decrease", json={"utoken": token, "decrement_by": amount}
            )
        except httpx.HTTPError as e:
            logger.warning("Token decrement of %d for %s failed: %s", amount, mask_token(token), e)
            return
        if not response.is_success:
            logger.warning(
                "Token decrement of %d for %s returned HTTP %s", amount, mask_token(token), response.status_code
            )

    async def drain(self) -> None:
        """Wait for in-flight decrements (used at shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self._client.aclose()
