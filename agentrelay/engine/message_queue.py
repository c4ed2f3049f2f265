"""Coalescing prompt queue between the transport and the dispatch loop.

Prompts are never merged: every push() becomes its own item, in FIFO
order. Only configuration is coalesced. A mode change that arrives
without a prompt is held as the pending mode and stamped onto the
next pushed item that does not carry its own mode.

All methods except wait_for_next() are synchronous and run to
completion on the event loop, so push/reset from the message delivery
path always see a consistent sequence.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque

from .models import Mode, QueueItem

logger = logging.getLogger(__name__)


class CoalescingMessageQueue:
    """FIFO of QueueItems with mode-only updates folded forward."""

    def __init__(self, default_mode: Mode | None = None) -> None:
        self._items: deque[QueueItem] = deque()
        self._available = asyncio.Event()
        self._closed = False
        self._default_mode = default_mode or Mode()
        self._pending_mode: Mode | None = None

    def push(self, prompt: str, mode: Mode | None = None) -> QueueItem:
        """Append a prompt. Never merges with an existing item.

        When mode is None the pending mode (from update_mode) or the
        default mode is used.
        """
        if self._closed:
            raise RuntimeError("queue is closed")
        if mode is None:
            mode = self._pending_mode or self._default_mode
        self._pending_mode = None
        item = QueueItem(prompt=prompt, mode=mode)
        tail = self._items[-1] if self._items else None
        if tail is not None and tail.mode.fingerprint() == mode.fingerprint():
            logger.debug(
                "Queue append with same mode as tail (size=%d)",
                len(self._items) + 1,
            )
        self._items.append(item)
        self._default_mode = mode
        self._available.set()
        return item

    def update_mode(self, mode: Mode) -> None:
        """Record a mode change that has no prompt of its own."""
        self._pending_mode = mode
        logger.debug(
            "Pending mode updated: permission=%s model=%s",
            mode.permission_mode.value, mode.model,
        )

    @property
    def pending_mode(self) -> Mode | None:
        return self._pending_mode

    async def wait_for_next(self, timeout: float | None = None) -> QueueItem | None:
        """Wait for the next item in FIFO order.

        Returns None when the timeout expires or the queue is closed.
        Cancelling the waiting task raises CancelledError as usual.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if self._items:
                item = self._items.popleft()
                if not self._items:
                    self._available.clear()
                return item
            if self._closed:
                return None
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            try:
                await asyncio.wait_for(self._available.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None

    def reset(self) -> int:
        """Discard all pending items. Returns how many were dropped.

        An item already handed to a waiter is unaffected.
        """
        dropped = len(self._items)
        self._items.clear()
        self._available.clear()
        if dropped:
            logger.info("Queue reset, dropped %d pending prompt(s)", dropped)
        return dropped

    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def close(self) -> None:
        """Wake all waiters; later waits return None once drained."""
        self._closed = True
        self._available.set()

    @property
    def closed(self) -> bool:
        return self._closed
