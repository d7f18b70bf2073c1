"""
Тесты для неблокирующего журнала событий
"""

import pytest
from unittest.mock import AsyncMock

from crmsync.utils.log_sink import LogSink


class TestLogSink:
    """Тесты для LogSink"""

    def test_record_never_raises(self):
        """Тест: несериализуемый контекст"""
        sink = LogSink()
        sink.record("info", "u", "message", {"error": ValueError("boom"), "obj": object()})
        assert sink.pending() == 1

    def test_unknown_level_becomes_info(self):
        """Тест: неизвестный уровень"""
        sink = LogSink()
        sink.record("shout", None, "message")
        assert sink._queue.get_nowait().level == "info"

    def test_overflow_drops(self):
        """Тест: переполнение очереди"""
        sink = LogSink(max_queue_size=2)
        for i in range(5):
            sink.info("u", f"message {i}")

        assert sink.pending() == 2
        assert sink.dropped == 3

    @pytest.mark.asyncio
    async def test_events_are_persisted(self):
        """Тест: события сохраняются в фоне"""
        persist = AsyncMock()
        sink = LogSink(persist=persist)
        await sink.start()
        try:
            sink.warning("u", "Contact fetch failed", {"contact_id": 5}, category="webhook")
            await sink.flush()
        finally:
            await sink.stop()

        event = persist.await_args.args[0]
        assert event.level == "warning"
        assert event.user_id == "u"
        assert event.context == {"contact_id": 5}

    @pytest.mark.asyncio
    async def test_persist_failure_is_swallowed(self):
        """Тест: ошибка записи в БД не ломает журнал"""
        persist = AsyncMock(side_effect=RuntimeError("db down"))
        sink = LogSink(persist=persist)
        await sink.start()
        try:
            sink.error("u", "first")
            sink.error("u", "second")
            await sink.flush()
        finally:
            await sink.stop()

        assert persist.await_count == 2
        assert sink.pending() == 0
