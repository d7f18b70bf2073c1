"""
Structured event log for the webhook pipeline
record() only enqueues; a background drainer writes each event to structlog
and, when configured, to the system_logs table. Nothing here ever raises
into the caller.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from .helpers import safe_json_loads, safe_json_dumps

logger = structlog.get_logger("crmsync.events")

LEVELS = ("debug", "info", "warning", "error")


@dataclass
class LogEvent:
    level: str
    user_id: Optional[str]
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    category: str = "webhook"
    created_at: float = field(default_factory=time.time)


PersistFn = Callable[[LogEvent], Awaitable[None]]


class LogSink:
    """Non-blocking log channel"""

    def __init__(self, persist: Optional[PersistFn] = None, max_queue_size: int = 1000):
        self._persist = persist
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._drainer: Optional[asyncio.Task] = None
        self.dropped = 0

    def record(
        self,
        level: str,
        user_id: Optional[str],
        message: str,
        context: Optional[Dict[str, Any]] = None,
        category: str = "webhook"
    ) -> None:
        try:
            level = level if level in LEVELS else "info"
            # контекст может содержать исключения и прочие несериализуемые объекты
            clean_context = safe_json_loads(safe_json_dumps(context or {}), default={})
            self._queue.put_nowait(
                LogEvent(level, user_id, message, clean_context, category)
            )
        except asyncio.QueueFull:
            self.dropped += 1
        except Exception as e:
            self.dropped += 1
            logger.warning("Log event rejected", error=str(e))

    def info(self, user_id: Optional[str], message: str, context: Optional[Dict[str, Any]] = None, category: str = "webhook") -> None:
        self.record("info", user_id, message, context, category)

    def warning(self, user_id: Optional[str], message: str, context: Optional[Dict[str, Any]] = None, category: str = "webhook") -> None:
        self.record("warning", user_id, message, context, category)

    def error(self, user_id: Optional[str], message: str, context: Optional[Dict[str, Any]] = None, category: str = "webhook") -> None:
        self.record("error", user_id, message, context, category)

    async def _write(self, event: LogEvent) -> None:
        log = getattr(logger, event.level, logger.info)
        log(event.message, user_id=event.user_id, category=event.category, context=event.context)

        if self._persist is None:
            return
        try:
            await self._persist(event)
        except Exception as e:
            logger.warning("Failed to persist log event", error=str(e), category=event.category)

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()

    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._drainer is None:
            self._drainer = asyncio.create_task(self._drain())

    async def flush(self, timeout: float = 5.0) -> None:
        """Wait until queued events are written"""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Log sink flush timeout", pending=self.pending())

    async def stop(self, timeout: float = 5.0) -> None:
        if self._drainer is None:
            return
        await self.flush(timeout)
        self._drainer.cancel()
        try:
            await self._drainer
        except asyncio.CancelledError:
            pass
        self._drainer = None
        if self.dropped:
            logger.warning("Log events dropped", dropped=self.dropped)
