"""One-way background messages.

Side effects that must never slow down or fail the caller (the promotion
check after a rule-path save) are emitted as messages onto an in-process
queue. A single worker task delivers each message to the handlers
registered for its type; handler failures are logged and swallowed.

Usage:
    from notetriage.engine.events import BackgroundDispatcher, PromotionCheckRequested

    dispatcher = BackgroundDispatcher()
    dispatcher.register(PromotionCheckRequested, detector.handle_check_requested)

    dispatcher.emit(PromotionCheckRequested(note_id="n1", current=result, previous=None))
    await dispatcher.drain()   # tests / shutdown
    await dispatcher.aclose()
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from notetriage.classifier.taxonomy import InferenceResult
from notetriage.core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class PromotionCheckRequested:
    """A new baseline was saved; compare it with the one it replaced."""

    note_id: str
    current: InferenceResult
    previous: InferenceResult | None = None
    source: str = "realtime"


class BackgroundDispatcher:
    """asyncio.Queue with one worker task, started lazily on first emit."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = {}
        self._queue: asyncio.Queue[Any] | None = None
        self._worker: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def register(self, message_type: type, handler: Handler) -> None:
        self._handlers.setdefault(message_type, []).append(handler)

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue[Any]:
        if self._queue is None or self._loop is not loop or self._worker is None or self._worker.done():
            if self._loop is not loop:
                self._queue = None
            if self._queue is None:
                self._queue = asyncio.Queue()
            self._loop = loop
            self._worker = loop.create_task(self._worker_loop(self._queue), name="background-dispatcher")
        return self._queue

    def emit(self, message: Any) -> bool:
        """Queue a message without waiting for its handlers.

        Returns:
            True if the message was queued, False if nothing handles it or
            there is no running event loop
        """
        if not self._handlers.get(type(message)):
            logger.debug("background_message_unhandled", message_type=type(message).__name__)
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("background_emit_without_loop", message_type=type(message).__name__)
            return False

        self._ensure_worker(loop).put_nowait(message)
        return True

    async def _worker_loop(self, queue: asyncio.Queue[Any]) -> None:
        while True:
            message = await queue.get()
            try:
                for handler in self._handlers.get(type(message), []):
                    try:
                        await handler(message)
                    except Exception as e:
                        logger.error(
                            "background_handler_failed",
                            message_type=type(message).__name__,
                            handler=getattr(handler, "__qualname__", repr(handler)),
                            error=str(e),
                        )
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def aclose(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        self._queue = None
        self._loop = None
