"""
Monitor registry: lifecycle of live event monitors.

A monitor handle owns one adapter subscription per binding (filter +
callback). Stopping a handle cancels exactly those subscriptions, once,
and is idempotent. Registering a name that is already live stops the
previous handle first so overlapping filters never deliver twice.

Delivery rules:
- Batches arriving for a stopped handle are dropped.
- stop() may be called from inside a callback; the rest of the in-flight
  batch is dropped.
- A callback that raises is logged and counted; the monitor keeps running
  and other handles are unaffected.
- Coroutine callbacks are scheduled as tasks so they never block the
  adapter's next delivery. Tasks still pending when the handle stops are
  cancelled, so no callback body runs after stop() returns.

Usage:
    from core.monitor_registry import MonitorBinding, MonitorRegistry

    registry = MonitorRegistry(source)
    handle = registry.register("payment-all-all", [MonitorBinding(flt, on_payment)])
    registry.stop(handle)
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from data.event_source import EventSource, SubscriptionToken
from ledger_logging.logger_manager import setup_module_logger
from shared.types import DomainEvent, EventFilter

EventCallback = Callable[[DomainEvent], Any]


@dataclass(frozen=True)
class MonitorBinding:
    event_filter: EventFilter
    callback: EventCallback


@dataclass(eq=False)
class MonitorHandle:
    """One live registration. Inactive once stopped; never reactivated."""

    handle_id: str
    name: str
    bindings: tuple[MonitorBinding, ...]
    tokens: list[SubscriptionToken] = field(default_factory=list)
    active: bool = True
    delivered: int = 0
    errors: int = 0
    dropped: int = 0
    created_at: float = field(default_factory=time.time)
    pending: set[asyncio.Task] = field(default_factory=set, repr=False)


class MonitorRegistry:
    """Owns every live MonitorHandle for one SDK instance."""

    def __init__(self, source: EventSource) -> None:
        self._source = source
        self._handles: dict[str, MonitorHandle] = {}
        self._by_name: dict[str, MonitorHandle] = {}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task] = set()
        self._logger = setup_module_logger(
            "monitor_registry", "monitor_registry.log", module_folder="Monitor_Logs"
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, name: str, bindings: Sequence[MonitorBinding]) -> MonitorHandle:
        """
        Install a monitor under name with one adapter subscription per binding.

        Raises:
            ValueError: no bindings given.
            Any error from the adapter's subscribe(); subscriptions already
            created for this handle are cancelled first.
        """
        if not bindings:
            raise ValueError(f"Monitor '{name}' needs at least one binding")

        previous = self._by_name.get(name)
        if previous is not None and previous.active:
            self._logger.info("Monitor '%s' re-registered, stopping %s", name, previous.handle_id)
            self.stop(previous)

        handle = MonitorHandle(
            handle_id=f"{name}-{next(self._ids)}",
            name=name,
            bindings=tuple(bindings),
        )
        try:
            for binding in handle.bindings:
                token = self._source.subscribe(
                    binding.event_filter, self._make_dispatcher(handle, binding)
                )
                handle.tokens.append(token)
        except Exception:
            handle.active = False
            self._cancel_tokens(handle)
            raise

        self._handles[handle.handle_id] = handle
        self._by_name[name] = handle
        self._logger.info(
            "Monitor %s registered with %d subscription(s)", handle.handle_id, len(handle.tokens)
        )
        return handle

    def stop(self, handle: MonitorHandle | str) -> bool:
        """Stop a handle (or handle id). False if unknown or already stopped."""
        if isinstance(handle, str):
            found = self._handles.get(handle)
            if found is None:
                return False
            handle = found
        if not handle.active:
            return False

        handle.active = False
        self._cancel_tokens(handle)
        self._cancel_pending(handle)
        self._handles.pop(handle.handle_id, None)
        if self._by_name.get(handle.name) is handle:
            del self._by_name[handle.name]
        self._logger.info(
            "Monitor %s stopped (delivered=%d errors=%d dropped=%d)",
            handle.handle_id,
            handle.delivered,
            handle.errors,
            handle.dropped,
        )
        return True

    def stop_all(self) -> int:
        """Stop every live handle. Returns how many were stopped."""
        stopped = sum(1 for handle in list(self._handles.values()) if self.stop(handle))
        if stopped:
            self._logger.info("Stopped %d monitor(s)", stopped)
        return stopped

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, handle_id: str) -> MonitorHandle | None:
        return self._handles.get(handle_id)

    def get_by_name(self, name: str) -> MonitorHandle | None:
        return self._by_name.get(name)

    @property
    def handles(self) -> list[MonitorHandle]:
        return list(self._handles.values())

    def __len__(self) -> int:
        return len(self._handles)

    async def drain(self) -> None:
        """Wait for scheduled coroutine callbacks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _make_dispatcher(
        self, handle: MonitorHandle, binding: MonitorBinding
    ) -> Callable[[list[DomainEvent]], None]:
        def _dispatch(events: list[DomainEvent]) -> None:
            self._deliver(handle, binding, events)

        return _dispatch

    def _deliver(
        self, handle: MonitorHandle, binding: MonitorBinding, events: list[DomainEvent]
    ) -> None:
        for index, event in enumerate(events):
            if not handle.active:
                handle.dropped += len(events) - index
                self._logger.debug(
                    "Dropped %d event(s) for stopped monitor %s",
                    len(events) - index,
                    handle.handle_id,
                )
                return
            if not binding.event_filter.matches(event):
                continue
            try:
                result = binding.callback(event)
                if inspect.isawaitable(result):
                    self._schedule(handle, result)
                handle.delivered += 1
            except Exception:
                handle.errors += 1
                self._logger.exception(
                    "Callback for monitor %s failed on %s at block %s",
                    handle.handle_id,
                    event.kind.value,
                    event.block_number,
                    extra={
                        "handle_id": handle.handle_id,
                        "event_kind": event.kind.value,
                        "block_number": event.block_number,
                    },
                )

    def _schedule(self, handle: MonitorHandle, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)
        handle.pending.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending.discard(finished)
            handle.pending.discard(finished)
            if finished.cancelled():
                handle.dropped += 1
                return
            exc = finished.exception()
            if exc is not None:
                handle.errors += 1
                self._logger.error(
                    "Async callback for monitor %s failed: %s",
                    handle.handle_id,
                    exc,
                    exc_info=exc,
                    extra={"handle_id": handle.handle_id, "error": str(exc)},
                )

        task.add_done_callback(_done)

    def _cancel_pending(self, handle: MonitorHandle) -> None:
        # A callback stopping its own handle keeps running to completion
        if not handle.pending:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(handle.pending):
            if task is not current and not task.done():
                task.cancel()

    def _cancel_tokens(self, handle: MonitorHandle) -> None:
        tokens, handle.tokens = handle.tokens, []
        for token in tokens:
            try:
                self._source.cancel(token)
            except Exception as e:
                self._logger.warning(
                    "Cancelling subscription %s for %s failed: %s",
                    token.token_id,
                    handle.handle_id,
                    e,
                )
