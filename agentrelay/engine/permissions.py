"""Pending permission requests forwarded to the operator.

A backend that cannot decide on its own emits a PermissionRequest.
The orchestrator registers a waiter here, shows the request to the
operator and answers the backend once the operator decides, or denies
when nobody answers in time.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class PendingPermissions:
    """request_id → Future[bool] with a bounded wait."""

    def __init__(self, timeout: float = 300.0) -> None:
        # 0 (or less) disables the timeout
        self._timeout = timeout if timeout > 0 else None
        self._futures: dict[str, asyncio.Future[bool]] = {}

    def __len__(self) -> int:
        return len(self._futures)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._futures

    def register(self, request_id: str) -> asyncio.Future[bool]:
        """Create the waiter for *request_id* (idempotent)."""
        future = self._futures.get(request_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._futures[request_id] = future
        return future

    def request(self, request_id: str) -> Coroutine[Any, Any, bool]:
        """Register *request_id* now and return a coroutine awaiting the decision.

        Registration happens before the coroutine is scheduled, so a
        resolve() or deny_all() that comes first is not lost.
        """
        return self._wait(request_id, self.register(request_id))

    async def wait(self, request_id: str) -> bool:
        """Block until the operator decides. Returns True to allow.

        Denies on timeout.
        """
        return await self._wait(request_id, self.register(request_id))

    async def _wait(self, request_id: str, future: asyncio.Future[bool]) -> bool:
        try:
            approved = await asyncio.wait_for(future, timeout=self._timeout)
            logger.info(
                "Permission request resolved request_id=%s approved=%s",
                request_id[:8], approved,
            )
            return approved
        except asyncio.TimeoutError:
            logger.warning(
                "Permission request %s timed out after %.0fs, denying",
                request_id[:8], self._timeout,
            )
            return False
        finally:
            if self._futures.get(request_id) is future:
                del self._futures[request_id]

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Complete a pending waiter. Returns False for unknown ids."""
        future = self._futures.get(request_id)
        if future and not future.done():
            future.set_result(approved)
            logger.info(
                "Permission future set request_id=%s approved=%s",
                request_id[:8], approved,
            )
            return True
        logger.warning(
            "Permission resolve ignored request_id=%s (missing or already done)",
            request_id[:8],
        )
        return False

    def deny_all(self) -> int:
        """Deny every pending request. Returns how many were pending."""
        count = 0
        for request_id, future in list(self._futures.items()):
            if not future.done():
                future.set_result(False)
                count += 1
                logger.info("Permission request %s denied on abort", request_id[:8])
        self._futures.clear()
        return count
