"""
Тесты для очереди задач
"""

import asyncio

import pytest

from crmsync.config import get_settings
from crmsync.exceptions import QueueFullError
from crmsync.tasks.queue import (
    AMOCRM_WEBHOOK_TOPIC,
    FILE_PROCESSING_TOPIC,
    LPTRACKER_WEBHOOK_TOPIC,
    BackoffType,
    JobQueue,
    JobStatus,
    RetryPolicy,
    TopicConfig,
    build_job_queue,
)

FAST_RETRY = RetryPolicy(attempts=3, backoff_delay=0.01, backoff_type=BackoffType.EXPONENTIAL)


async def wait_until(predicate, timeout: float = 2.0):
    """Ждать выполнения условия"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestRetryPolicy:
    """Тесты для политики повторов"""

    def test_exponential_delays(self):
        """Тест: 2с, затем 4с"""
        policy = RetryPolicy(attempts=3, backoff_delay=2.0)
        assert policy.delay_for(1) == 2.0
        assert policy.delay_for(2) == 4.0

    def test_fixed_delays(self):
        """Тест: фиксированная задержка"""
        policy = RetryPolicy(attempts=2, backoff_delay=1.5, backoff_type=BackoffType.FIXED)
        assert policy.delay_for(1) == policy.delay_for(5) == 1.5


class TestJobQueue:
    """Тесты для очереди задач"""

    def test_default_topics(self):
        """Тест: топики и их параметры"""
        queue = build_job_queue(get_settings())

        assert set(queue.topics) == {AMOCRM_WEBHOOK_TOPIC, LPTRACKER_WEBHOOK_TOPIC, FILE_PROCESSING_TOPIC}
        assert queue.stats(AMOCRM_WEBHOOK_TOPIC).to_dict() == {
            "waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0
        }

    @pytest.mark.asyncio
    async def test_file_topic_waits_for_worker(self):
        """Тест: задача топика без обработчика выполняется после регистрации"""
        seen = []

        async def handler(job):
            seen.append(job.data["file"])

        queue = build_job_queue(get_settings())
        await queue.start()
        try:
            await queue.enqueue(FILE_PROCESSING_TOPIC, {"file": "leads.xlsx"})
            await asyncio.sleep(0.01)
            assert queue.stats(FILE_PROCESSING_TOPIC).waiting == 1

            queue.register_worker(FILE_PROCESSING_TOPIC, handler)
            await queue.join(FILE_PROCESSING_TOPIC)
        finally:
            await queue.stop()

        assert seen == ["leads.xlsx"]
        assert queue.stats(FILE_PROCESSING_TOPIC).completed == 1

    @pytest.mark.asyncio
    async def test_job_completes(self):
        """Тест: успешное выполнение"""
        seen = []

        async def handler(job):
            seen.append(job.data["n"])

        queue = JobQueue([TopicConfig("t", concurrency=2, retry_policy=FAST_RETRY)])
        queue.register_worker("t", handler)
        await queue.start()
        try:
            for n in range(5):
                await queue.enqueue("t", {"n": n})
            await queue.join("t")
        finally:
            await queue.stop()

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert queue.stats("t").completed == 5

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        """Тест: повтор после ошибки"""
        calls = []

        async def handler(job):
            calls.append(job.attempts_made)
            if len(calls) < 3:
                raise RuntimeError("upstream error")

        queue = JobQueue([TopicConfig("t", retry_policy=FAST_RETRY)])
        queue.register_worker("t", handler)
        await queue.start()
        try:
            await queue.enqueue("t", {})
            await wait_until(lambda: queue.stats("t").completed == 1)
        finally:
            await queue.stop()

        assert calls == [1, 2, 3]
        assert queue.stats("t").failed == 0

    @pytest.mark.asyncio
    async def test_exhausted_job_is_parked(self):
        """Тест: задача после всех попыток попадает в failed"""
        async def handler(job):
            raise RuntimeError("always broken")

        queue = JobQueue([TopicConfig("t", retry_policy=RetryPolicy(2, 0.01))])
        queue.register_worker("t", handler)
        await queue.start()
        try:
            job_id = await queue.enqueue("t", {"payload": 1})
            await wait_until(lambda: queue.stats("t").failed == 1)
        finally:
            await queue.stop()

        failed = queue.get_failed_jobs("t")
        assert [j.id for j in failed] == [job_id]
        assert failed[0].status == JobStatus.FAILED
        assert failed[0].attempts_made == 2
        assert failed[0].failed_reason == "always broken"

    @pytest.mark.asyncio
    async def test_timeout_fails_attempt(self):
        """Тест: таймаут топика"""
        async def handler(job):
            await asyncio.sleep(5)

        queue = JobQueue([TopicConfig("t", timeout=0.05, retry_policy=RetryPolicy(1, 0))])
        queue.register_worker("t", handler)
        await queue.start()
        try:
            await queue.enqueue("t", {})
            await wait_until(lambda: queue.stats("t").failed == 1)
        finally:
            await queue.stop()

        assert queue.get_failed_jobs("t")[0].failed_reason == "Job timed out"

    @pytest.mark.asyncio
    async def test_retry_failed_job(self):
        """Тест: ручной перезапуск задачи"""
        broken = True

        async def handler(job):
            if broken:
                raise RuntimeError("broken")

        queue = JobQueue([TopicConfig("t", retry_policy=RetryPolicy(1, 0))])
        queue.register_worker("t", handler)
        await queue.start()
        try:
            job_id = await queue.enqueue("t", {})
            await wait_until(lambda: queue.stats("t").failed == 1)

            broken = False
            assert await queue.retry_failed_job("t", job_id)
            await wait_until(lambda: queue.stats("t").completed == 1)
            assert not await queue.retry_failed_job("t", "missing")
        finally:
            await queue.stop()

        assert queue.get_failed_jobs("t") == []

    @pytest.mark.asyncio
    async def test_queue_full(self):
        """Тест: переполнение очереди"""
        queue = JobQueue([TopicConfig("t")], max_queue_size=1)
        await queue.enqueue("t", {})

        with pytest.raises(QueueFullError):
            await queue.enqueue("t", {})
        assert queue.stats("t").waiting == 1

    @pytest.mark.asyncio
    async def test_unknown_topic(self):
        """Тест: неизвестный топик"""
        queue = JobQueue()
        with pytest.raises(KeyError):
            await queue.enqueue("nope", {})
