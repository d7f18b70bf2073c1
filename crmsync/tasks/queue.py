"""
AsyncIO job queue with named topics
Per-topic worker pools, retry with backoff, dead-job parking.
In-process and not durable: an external durable queue is expected in front
of this in production, so jobs may be redelivered (at-least-once).
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from ..exceptions import QueueFullError

logger = structlog.get_logger("crmsync.tasks.queue")

JobHandler = Callable[["Job"], Awaitable[Any]]


class JobStatus(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a job runs and how long to wait between runs"""
    attempts: int = 3
    backoff_delay: float = 2.0
    backoff_type: BackoffType = BackoffType.EXPONENTIAL

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next run, after ``attempts_made`` failed runs"""
        if self.backoff_type == BackoffType.EXPONENTIAL:
            return self.backoff_delay * (2 ** (attempts_made - 1))
        return self.backoff_delay


@dataclass
class TopicConfig:
    name: str
    concurrency: int = 1
    timeout: Optional[float] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    remove_on_complete: int = 100
    remove_on_fail: int = 50


@dataclass
class Job:
    """Queued unit of work"""
    topic: str
    data: Dict[str, Any]
    retry_policy: RetryPolicy
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    created_at: float = field(default_factory=time.time)
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_reason: Optional[str] = None
    result: Any = None


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }


class _Topic:
    """Runtime state of one topic"""

    def __init__(self, config: TopicConfig, max_queue_size: int):
        self.config = config
        self.waiting: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.handler: Optional[JobHandler] = None
        self.workers: List[asyncio.Task] = []
        self.delayed: Dict[str, asyncio.TimerHandle] = {}
        self.active = 0
        self.completed_total = 0
        self.failed_total = 0
        self.completed: Deque[Job] = deque(maxlen=config.remove_on_complete or None)
        self.failed: Deque[Job] = deque(maxlen=config.remove_on_fail or None)


class JobQueue:
    """Topic-based async job queue with bounded concurrency per topic"""

    def __init__(self, topics: Optional[List[TopicConfig]] = None, max_queue_size: int = 10000):
        self.max_queue_size = max_queue_size
        self._topics: Dict[str, _Topic] = {}
        self._running = False
        for config in topics or []:
            self.add_topic(config)

    def add_topic(self, config: TopicConfig) -> None:
        if config.name in self._topics:
            raise ValueError(f"Topic already configured: {config.name}")
        self._topics[config.name] = _Topic(config, self.max_queue_size)

    def _topic(self, name: str) -> _Topic:
        topic = self._topics.get(name)
        if topic is None:
            raise KeyError(f"Unknown topic: {name}")
        return topic

    @property
    def topics(self) -> List[str]:
        return list(self._topics.keys())

    def register_worker(
        self,
        topic: str,
        handler: JobHandler,
        concurrency: Optional[int] = None
    ) -> None:
        """Attach the handler that processes jobs of ``topic``"""
        state = self._topic(topic)
        state.handler = handler
        if concurrency is not None:
            state.config.concurrency = concurrency
        logger.info("Worker registered", topic=topic, concurrency=state.config.concurrency)
        if self._running:
            self._start_topic(state)

    async def enqueue(
        self,
        topic: str,
        data: Dict[str, Any],
        retry_policy: Optional[RetryPolicy] = None
    ) -> str:
        """Add a job and return its id"""
        state = self._topic(topic)
        job = Job(topic=topic, data=data, retry_policy=retry_policy or state.config.retry_policy)

        try:
            state.waiting.put_nowait(job)
        except asyncio.QueueFull:
            raise QueueFullError(f"Queue for topic {topic} is full", {"topic": topic})

        if state.handler is None:
            logger.warning("Job added to topic without a worker", job_id=job.id, topic=topic)
        else:
            logger.debug("Job added to queue", job_id=job.id, topic=topic)
        return job.id

    async def _run_handler(self, state: _Topic, job: Job) -> Any:
        call = state.handler(job)
        if state.config.timeout:
            return await asyncio.wait_for(call, timeout=state.config.timeout)
        return await call

    def _requeue(self, state: _Topic, job: Job) -> None:
        state.delayed.pop(job.id, None)
        job.status = JobStatus.WAITING
        try:
            state.waiting.put_nowait(job)
        except asyncio.QueueFull:
            self._park_failed(state, job, "Queue full on retry")

    def _park_failed(self, state: _Topic, job: Job, reason: str) -> None:
        job.status = JobStatus.FAILED
        job.failed_reason = reason
        job.finished_at = time.time()
        state.failed.append(job)
        state.failed_total += 1
        logger.error(
            "Job failed permanently",
            job_id=job.id,
            topic=job.topic,
            attempts=job.attempts_made,
            reason=reason,
            data=job.data
        )

    async def _execute_job(self, state: _Topic, job: Job) -> None:
        """Execute single job"""
        job.status = JobStatus.ACTIVE
        job.processed_at = time.time()
        job.attempts_made += 1
        state.active += 1

        try:
            job.result = await self._run_handler(state, job)
            job.status = JobStatus.COMPLETED
            job.finished_at = time.time()
            state.completed.append(job)
            state.completed_total += 1
            logger.debug("Job completed", job_id=job.id, topic=job.topic)

        except asyncio.CancelledError:
            raise

        except Exception as e:
            reason = "Job timed out" if isinstance(e, asyncio.TimeoutError) else str(e) or type(e).__name__
            job.failed_reason = reason

            if job.attempts_made < job.retry_policy.attempts:
                delay = job.retry_policy.delay_for(job.attempts_made)
                job.status = JobStatus.DELAYED
                loop = asyncio.get_running_loop()
                state.delayed[job.id] = loop.call_later(delay, self._requeue, state, job)
                logger.warning(
                    "Job failed, retry scheduled",
                    job_id=job.id,
                    topic=job.topic,
                    attempt=job.attempts_made,
                    delay_seconds=delay,
                    error=reason
                )
            else:
                self._park_failed(state, job, reason)

        finally:
            state.active -= 1

    async def _worker(self, state: _Topic, worker_id: int):
        """Worker coroutine"""
        logger.debug("Worker started", topic=state.config.name, worker_id=worker_id)
        try:
            while True:
                job = await state.waiting.get()
                try:
                    await self._execute_job(state, job)
                finally:
                    state.waiting.task_done()
        except asyncio.CancelledError:
            logger.debug("Worker cancelled", topic=state.config.name, worker_id=worker_id)
            raise

    def _start_topic(self, state: _Topic) -> None:
        if state.handler is None or state.workers:
            return
        for i in range(state.config.concurrency):
            state.workers.append(asyncio.create_task(self._worker(state, i)))

    async def start(self):
        """Start worker pools of every topic with a registered handler"""
        if self._running:
            return
        self._running = True
        for state in self._topics.values():
            self._start_topic(state)
        logger.info(
            "Job queue started",
            topics={name: len(state.workers) for name, state in self._topics.items()}
        )

    async def stop(self, timeout: float = 10.0):
        """Stop all workers and drop pending retry timers"""
        if not self._running:
            return

        logger.info("Stopping job queue...")
        self._running = False

        workers = []
        for state in self._topics.values():
            for handle in state.delayed.values():
                handle.cancel()
            state.delayed.clear()
            for worker in state.workers:
                worker.cancel()
            workers.extend(state.workers)
            state.workers = []

        try:
            await asyncio.wait_for(
                asyncio.gather(*workers, return_exceptions=True),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Job queue stop timeout, forcing shutdown")

        logger.info("Job queue stopped")

    async def join(self, topic: str) -> None:
        """Wait until every job currently waiting on ``topic`` has run once"""
        await self._topic(topic).waiting.join()

    def stats(self, topic: str) -> QueueStats:
        state = self._topic(topic)
        return QueueStats(
            waiting=state.waiting.qsize(),
            active=state.active,
            completed=state.completed_total,
            failed=state.failed_total,
            delayed=len(state.delayed),
        )

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        return {name: self.stats(name).to_dict() for name in self._topics}

    def get_failed_jobs(self, topic: str) -> List[Job]:
        return list(self._topic(topic).failed)

    async def retry_failed_job(self, topic: str, job_id: str) -> bool:
        """Move a parked job back to waiting with a fresh attempt budget"""
        state = self._topic(topic)
        for job in list(state.failed):
            if job.id == job_id:
                state.failed.remove(job)
                job.attempts_made = 0
                job.failed_reason = None
                job.finished_at = None
                job.status = JobStatus.WAITING
                try:
                    state.waiting.put_nowait(job)
                except asyncio.QueueFull:
                    raise QueueFullError(f"Queue for topic {topic} is full", {"topic": topic})
                logger.info("Failed job requeued", job_id=job_id, topic=topic)
                return True
        return False


AMOCRM_WEBHOOK_TOPIC = "amocrm-webhook"
LPTRACKER_WEBHOOK_TOPIC = "lptracker-webhook"
FILE_PROCESSING_TOPIC = "excel-processing"


def build_job_queue(settings) -> JobQueue:
    """
    Queue with the webhook and file-processing topics configured from settings.
    Only the webhook topics get a worker here (WebhookProcessor.register_workers);
    jobs put on the file-processing topic wait until its handler is registered.
    """
    webhook_policy = RetryPolicy(
        attempts=settings.webhook_max_attempts,
        backoff_delay=settings.webhook_backoff_seconds,
        backoff_type=BackoffType.EXPONENTIAL
    )
    return JobQueue(
        topics=[
            TopicConfig(
                name=AMOCRM_WEBHOOK_TOPIC,
                concurrency=settings.webhook_concurrency,
                retry_policy=webhook_policy,
                remove_on_complete=100,
                remove_on_fail=50,
            ),
            TopicConfig(
                name=LPTRACKER_WEBHOOK_TOPIC,
                concurrency=settings.webhook_concurrency,
                retry_policy=webhook_policy,
                remove_on_complete=100,
                remove_on_fail=50,
            ),
            TopicConfig(
                name=FILE_PROCESSING_TOPIC,
                concurrency=settings.file_processing_concurrency,
                timeout=settings.file_processing_timeout_seconds,
                retry_policy=RetryPolicy(attempts=2, backoff_delay=0, backoff_type=BackoffType.FIXED),
                remove_on_complete=20,
                remove_on_fail=10,
            ),
        ],
        max_queue_size=settings.max_queue_size,
    )
