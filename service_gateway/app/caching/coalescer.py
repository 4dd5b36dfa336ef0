"""
Single-flight coalescing of concurrent cache misses.

When enabled, concurrent callers asking for the same key share one in-flight
upstream call instead of each issuing their own. If the leading caller is
cancelled, waiting callers do not inherit the cancellation: one of them takes
over as leader and the rest join it.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict

from shared.logging import get_logger


class _LeaderCancelled(Exception):
    """Set on the shared future when the leading caller is cancelled."""


class RequestCoalescer:
    """Per-key in-flight future map."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.logger = get_logger("gateway.coalescer")
        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}

    async def run(self, key: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run func once per key; later callers await the leader's result."""
        if not self.enabled:
            return await func()

        existing = self._in_flight.get(key)
        while existing is not None:
            self.logger.debug("Joining in-flight request", key=key)
            try:
                return await asyncio.shield(existing)
            except _LeaderCancelled:
                self.logger.info("In-flight leader cancelled, retrying", key=key)
                existing = self._in_flight.get(key)

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await func()
        except asyncio.CancelledError:
            future.set_exception(_LeaderCancelled(key))
            future.exception()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Followers re-raise; mark retrieved so a lone leader does not warn
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._in_flight.pop(key, None)

    def in_flight(self) -> int:
        return len(self._in_flight)
