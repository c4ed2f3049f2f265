"""Session orchestrator: one dispatch loop over one agent backend.

The transport side only ever enqueues prompts, records mode changes,
requests an abort or answers a permission request. The dispatch loop
owns everything else: it is the only writer of the run state and the
only caller of invoke()/cancel() on the backend, so at most one
invocation is active at any time.

Every invocation is tagged with a generation number. An abort bumps
the generation, so events still arriving from the cancelled
invocation are recognised as stale and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

from agentrelay.adapters.event_bus import EventBus
from agentrelay.adapters.events import (
    CONTENT_EVENT_TYPES,
    CanonicalEvent,
    ModelOutput,
    PermissionRequest,
    Status,
    STATUS_ERROR,
    STATUS_RUNNING,
    is_terminal,
)
from agentrelay.adapters.transport import Transport, TransportBridge

from .backends.base import AgentBackend
from .config import TITLE_INSTRUCTION, RelayConfig
from .lifecycle import validate_transition
from .message_queue import CoalescingMessageQueue
from .models import IDLE, Mode, PermissionMode, QueueItem, RunPhase, RunState
from .permissions import PendingPermissions

logger = logging.getLogger(__name__)

# How long a cancelled invocation may keep running before the loop
# stops waiting for it.
CANCEL_GRACE_SECONDS = 5.0

_END = None  # end-of-invocation marker on the pump queue


class SessionOrchestrator:
    """Serializes prompts against a single backend invocation at a time."""

    def __init__(
        self,
        backend: AgentBackend,
        transport: Transport,
        config: RelayConfig | None = None,
        *,
        initial_mode: Mode | None = None,
    ) -> None:
        self._config = config or RelayConfig()
        self._backend = backend
        self._bridge = TransportBridge(transport)
        self._current_mode = initial_mode or Mode()
        self._queue = CoalescingMessageQueue(default_mode=self._current_mode)
        self._event_bus = EventBus(maxsize=self._config.event_queue_size)
        self._event_bus.add_handler(self._bridge.handle)
        self._permissions = PendingPermissions(
            self._config.permission_timeout_seconds,
        )
        self._permission_tasks: set[asyncio.Task] = set()

        self._state: RunState = IDLE
        self._generation = 0
        self._applied_fingerprint: str | None = None
        self._thinking = False
        self._response_in_progress = False
        self._accumulated = ""
        self._first_message = True

        self._running = False
        self._shutting_down = False
        self._abort_requested = False
        self._keepalive_task: asyncio.Task | None = None

        # Instrumentation
        self.active_invocations = 0
        self.max_concurrent_invocations = 0
        self.readiness_count = 0

    # ── Read-only views ──

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def thinking(self) -> bool:
        return self._thinking

    @property
    def current_mode(self) -> Mode:
        return self._current_mode

    @property
    def queue(self) -> CoalescingMessageQueue:
        return self._queue

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def backend(self) -> AgentBackend:
        return self._backend

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # ── Transport-facing entry points ──

    def _resolve_mode(self, meta: dict[str, Any]) -> Mode:
        mode = self._current_mode
        raw_permission = meta.get("permissionMode")
        if raw_permission:
            permission = PermissionMode.parse(raw_permission)
            if permission is None:
                logger.warning("Ignoring invalid permission mode %r", raw_permission)
            else:
                mode = mode.with_changes(permission_mode=permission)
        if "model" in meta:
            model = meta["model"]
            if model is None:
                mode = mode.with_changes(model=None)
            elif isinstance(model, str) and model:
                mode = mode.with_changes(model=model)
        return mode

    def handle_user_message(
        self,
        text: str,
        meta: dict[str, Any] | None = None,
    ) -> QueueItem | None:
        """Queue a prompt with the mode its metadata resolves to."""
        if self._shutting_down:
            logger.warning("Dropping message received during shutdown")
            return None
        meta = meta or {}
        mode = self._resolve_mode(meta)
        self._current_mode = mode

        prompt = text
        append = meta.get("appendSystemPrompt")
        if self._first_message and append:
            prompt = f"{append}\n\n{text}{TITLE_INSTRUCTION}"
            self._first_message = False

        item = self._queue.push(prompt, mode)
        logger.debug(
            "Queued prompt (%d chars, mode=%s model=%s, queue=%d)",
            len(prompt), mode.permission_mode.value, mode.model, self._queue.size(),
        )
        return item

    def handle_mode_update(self, meta: dict[str, Any]) -> Mode:
        """Apply a metadata-only update. Creates no queue item."""
        mode = self._resolve_mode(meta)
        self._current_mode = mode
        self._queue.update_mode(mode)
        logger.info(
            "Mode updated: permission=%s model=%s",
            mode.permission_mode.value, mode.model,
        )
        return mode

    def resolve_permission(self, request_id: str, approved: bool) -> bool:
        """Route the operator's decision to the waiting request."""
        return self._permissions.resolve(request_id, approved)

    async def abort(self) -> None:
        """Drop queued prompts and cancel the running turn.

        Sends one turn_aborted acknowledgement per call, whether or
        not anything was running.
        """
        logger.info("Abort requested (state=%s)", self._state)
        self._queue.reset()
        self._generation += 1
        if self._state.is_active:
            self._abort_requested = True
        self._permissions.deny_all()
        self._accumulated = ""
        self._response_in_progress = False
        await self._bridge.turn_aborted()

    async def shutdown(self) -> None:
        """Stop the dispatch loop. run() disposes the backend on exit."""
        if self._shutting_down:
            return
        logger.info("Shutdown requested")
        self._shutting_down = True
        if self._state.is_active:
            await self.abort()
        else:
            self._queue.reset()
            self._permissions.deny_all()
        self._queue.close()
        if not self._running:
            await self._cleanup()

    # ── Dispatch loop ──

    async def run(self) -> None:
        """Dispatch queued prompts until shutdown()."""
        self._running = True
        logger.info("Dispatch loop started (backend=%s)", self._backend.name)
        self._keepalive_task = asyncio.create_task(self._keep_alive_loop())
        try:
            await self._emit_ready_if_idle()
            while not self._shutting_down:
                item = await self._queue.wait_for_next(
                    timeout=self._config.poll_interval_seconds,
                )
                if item is None:
                    continue
                await self._process(item)
                await self._emit_ready_if_idle()
        finally:
            self._running = False
            await self._cleanup()
            logger.info("Dispatch loop stopped")

    async def _cleanup(self) -> None:
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        # Pending requests are answered with a deny before the backend goes.
        self._permissions.deny_all()
        if self._permission_tasks:
            await asyncio.wait(
                list(self._permission_tasks), timeout=CANCEL_GRACE_SECONDS,
            )
        await self._backend.dispose()
        self._event_bus.close()

    def _set_state(self, phase: RunPhase, detail: str | None = None) -> None:
        current = self._state.phase
        if current == phase and phase != RunPhase.STARTING:
            return
        validate_transition(current, phase)
        self._state = RunState(phase, detail)
        logger.debug("Run state %s -> %s", current.value, self._state)

    async def _set_thinking(self, thinking: bool) -> None:
        if self._thinking == thinking:
            return
        self._thinking = thinking
        await self._send_keep_alive()

    async def _send_keep_alive(self) -> None:
        try:
            await self._bridge.keep_alive(self._thinking)
        except Exception:
            logger.exception("Keep-alive failed")

    async def _keep_alive_loop(self) -> None:
        interval = self._config.keepalive_interval_seconds
        while True:
            await self._send_keep_alive()
            await asyncio.sleep(interval)

    async def _emit_ready_if_idle(self) -> bool:
        """Announce readiness only when nothing is running or queued."""
        if self._shutting_down:
            return False
        if self._thinking:
            return False
        if self._response_in_progress:
            return False
        if self._queue.size() > 0:
            return False
        self.readiness_count += 1
        await self._bridge.ready()
        return True

    def _apply_mode(self, mode: Mode) -> None:
        fingerprint = mode.fingerprint()
        if fingerprint == self._applied_fingerprint:
            return
        self._backend.set_permission_mode(mode.permission_mode)
        self._backend.set_model(mode.model)
        self._applied_fingerprint = fingerprint
        logger.info(
            "Applied mode to %s backend: permission=%s model=%s",
            self._backend.name, mode.permission_mode.value, self._backend.model,
        )

    async def _process(self, item: QueueItem) -> None:
        self._abort_requested = False
        self._apply_mode(item.mode)
        self._generation += 1
        generation = self._generation
        self._accumulated = ""
        self._response_in_progress = False

        self._set_state(RunPhase.STARTING)
        logger.info(
            "Dispatching prompt (%d chars) generation=%d", len(item.prompt), generation,
        )
        await self._set_thinking(True)
        await self._bridge.task_started()

        if generation != self._generation:
            logger.info("Turn generation=%d aborted before invoke", generation)
            self._abort_requested = False
            await self._finish_turn(None, generation)
            return

        terminal = await self._consume_invocation(item, generation)
        await self._finish_turn(terminal, generation)

    async def _pump(
        self,
        prompt: str,
        generation: int,
        sink: asyncio.Queue,
    ) -> None:
        """Move one invocation's events onto *sink*, stamped."""
        try:
            async for event in self._backend.invoke(prompt, self._backend.session_token):
                event.generation = generation
                await sink.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Backend %s invocation failed", self._backend.name)
            await sink.put(Status(
                phase=STATUS_ERROR,
                detail=str(exc) or type(exc).__name__,
                generation=generation,
            ))
        finally:
            sink.put_nowait(_END)

    async def _consume_invocation(
        self,
        item: QueueItem,
        generation: int,
    ) -> Status | None:
        """Forward events until the terminal status. Returns it."""
        loop = asyncio.get_running_loop()
        poll = self._config.poll_interval_seconds
        sink: asyncio.Queue = asyncio.Queue()

        self.active_invocations += 1
        self.max_concurrent_invocations = max(
            self.max_concurrent_invocations, self.active_invocations,
        )
        pump = asyncio.create_task(self._pump(item.prompt, generation, sink))
        terminal: Status | None = None
        cancel_deadline: float | None = None
        cancel_sent = False
        try:
            while True:
                if self._abort_requested and cancel_deadline is None:
                    cancel_deadline = loop.time() + CANCEL_GRACE_SECONDS
                    self._set_state(RunPhase.STOPPING)
                    cancel_sent = await self._cancel_backend()
                elif cancel_deadline is not None and not cancel_sent and not pump.done():
                    # The invocation had not begun when cancel was first sent.
                    logger.debug("Retrying backend cancel generation=%d", generation)
                    cancel_sent = await self._cancel_backend()
                try:
                    event = await asyncio.wait_for(sink.get(), timeout=poll)
                except asyncio.TimeoutError:
                    if cancel_deadline is not None and loop.time() > cancel_deadline:
                        logger.warning(
                            "Backend did not stop within %.0fs of cancel",
                            CANCEL_GRACE_SECONDS,
                        )
                        break
                    continue
                if event is _END:
                    break
                if is_terminal(event):
                    terminal = event
                    break
                await self._forward(event)
        finally:
            if not pump.done():
                try:
                    # Let the backend finish its own cleanup after the
                    # terminal status; cancels the pump on timeout.
                    await asyncio.wait_for(pump, timeout=CANCEL_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning("Abandoned backend invocation generation=%d", generation)
            self.active_invocations -= 1
        return terminal

    async def _cancel_backend(self) -> bool:
        try:
            cancelled = await self._backend.cancel()
        except Exception:
            logger.exception("Backend cancel failed")
            return True
        logger.info("Backend cancel requested (cancelled=%s)", cancelled)
        return bool(cancelled)

    async def _forward(self, event: CanonicalEvent) -> None:
        if event.generation != self._generation:
            logger.debug(
                "Dropping stale %s event (generation %d, current %d)",
                event.event_type, event.generation, self._generation,
            )
            return

        if self._state.phase == RunPhase.STARTING and (
            event.event_type in CONTENT_EVENT_TYPES
            or (isinstance(event, Status) and event.phase == STATUS_RUNNING)
        ):
            self._set_state(RunPhase.RUNNING)

        if isinstance(event, ModelOutput):
            self._accumulate(event)
        elif isinstance(event, PermissionRequest):
            self._track_permission(event)

        await self._event_bus.publish(event)

    def _accumulate(self, event: ModelOutput) -> None:
        if event.text_delta:
            self._accumulated += event.text_delta
        elif event.full_text is not None:
            # Final text supersedes whatever was streamed.
            self._accumulated = event.full_text
        if self._accumulated:
            self._response_in_progress = True

    def _track_permission(self, request: PermissionRequest) -> None:
        if not request.id:
            logger.warning("Permission request without id, ignoring")
            return
        decision = self._permissions.request(request.id)
        task = asyncio.create_task(self._answer_permission(request, decision))
        self._permission_tasks.add(task)
        task.add_done_callback(self._permission_tasks.discard)

    async def _answer_permission(
        self,
        request: PermissionRequest,
        decision: Awaitable[bool],
    ) -> None:
        approved = await decision
        try:
            await self._backend.respond_to_permission(request.id, approved)
        except Exception:
            logger.exception("Failed to answer permission request %s", request.id)

    async def _finish_turn(self, terminal: Status | None, generation: int) -> None:
        aborted = generation != self._generation
        text = self._accumulated
        has_response = self._response_in_progress and bool(text.strip())
        self._accumulated = ""
        self._response_in_progress = False
        await self._set_thinking(False)

        if aborted:
            # The abort already sent its acknowledgement.
            logger.info("Turn generation=%d ended after abort", generation)
            self._set_state(RunPhase.IDLE)
            return

        if terminal is None:
            terminal = Status(
                phase=STATUS_ERROR,
                detail="backend stream ended without a terminal status",
                generation=generation,
            )
        await self._event_bus.publish(terminal)

        if terminal.phase == STATUS_ERROR:
            detail = terminal.detail or "Unknown error"
            logger.warning("Turn generation=%d failed: %s", generation, detail)
            self._set_state(RunPhase.ERROR, detail)
            await self._bridge.turn_aborted()
            await self._bridge.agent_message(f"Error: {detail}")
            return

        if has_response:
            await self._bridge.agent_message(text)
        await self._bridge.task_complete()
        self._set_state(RunPhase.IDLE)
        logger.info("Turn generation=%d complete (%s)", generation, terminal.phase)
