"""
Webhook processing pipeline
submit() is the fast path used by the HTTP layer: it only enqueues.
process() runs on a queue worker: resolve owner, extract the lead id, enrich,
then per rule filter by relevance, evaluate, deduplicate, dispatch and count.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Union

import structlog

from ..cache.config_cache import CacheKind, ConfigCache
from ..cache.dedup import DeduplicationStore
from ..config import get_settings
from ..exceptions import (
    EntityIdMissingError,
    OwnerResolutionError,
    RuleEvaluationError,
    TerminalWebhookError,
)
from ..models import ConfigurationStore, Platform, SyncRule, WebhookSource
from ..tasks.queue import (
    AMOCRM_WEBHOOK_TOPIC,
    LPTRACKER_WEBHOOK_TOPIC,
    BackoffType,
    Job,
    JobQueue,
    RetryPolicy,
)
from ..utils.log_sink import LogSink
from .conditions import evaluate_conditions, is_relevant
from .dispatcher import ActionDispatcher
from .enricher import EventEnricher
from .events import AmoCrmEvent, EventContext, InboundEvent, parse_event

logger = structlog.get_logger("crmsync.webhooks.processor")

WEBHOOK_TOPICS: Dict[WebhookSource, str] = {
    WebhookSource.AMOCRM: AMOCRM_WEBHOOK_TOPIC,
    WebhookSource.LPTRACKER: LPTRACKER_WEBHOOK_TOPIC,
}

# Метаданные, которые прогреваются вместе с правилами и настройками
CRITICAL_METADATA = (
    (Platform.AMOCRM, "pipelines"),
    (Platform.AMOCRM, "statuses"),
    (Platform.LPTRACKER, "projects"),
)


class WebhookProcessor:
    """Queues inbound webhooks and runs user rules against them"""

    def __init__(
        self,
        queue: JobQueue,
        store: ConfigurationStore,
        config_cache: ConfigCache,
        dedup: DeduplicationStore,
        enricher: EventEnricher,
        dispatcher: ActionDispatcher,
        log_sink: LogSink,
        monitoring=None
    ):
        self.settings = get_settings()
        self.queue = queue
        self.store = store
        self.config_cache = config_cache
        self.dedup = dedup
        self.enricher = enricher
        self.dispatcher = dispatcher
        self.log_sink = log_sink
        self.monitoring = monitoring
        self.retry_policy = RetryPolicy(
            attempts=self.settings.webhook_max_attempts,
            backoff_delay=self.settings.webhook_backoff_seconds,
            backoff_type=BackoffType.EXPONENTIAL
        )

    # Receipt

    async def submit(self, source: Union[str, WebhookSource], payload: Dict[str, Any]) -> str:
        """Enqueue a raw webhook and return the job id"""
        source = WebhookSource(source)
        topic = WEBHOOK_TOPICS[source]

        try:
            job_id = await self.queue.enqueue(
                topic,
                {"source": source.value, "payload": payload, "timestamp": time.time()},
                retry_policy=self.retry_policy
            )
        except Exception as e:
            self.log_sink.error(
                None,
                f"Failed to queue {source.value} webhook",
                {"error": str(e), "topic": topic}
            )
            raise

        self.log_sink.info(None, f"{source.value} webhook queued", {"job_id": job_id, "topic": topic})
        return job_id

    def register_workers(self) -> None:
        for topic in WEBHOOK_TOPICS.values():
            self.queue.register_worker(topic, self.handle_job, self.settings.webhook_concurrency)

    async def handle_job(self, job: Job) -> None:
        await self.process(job.data["source"], job.data.get("payload") or {})

    # Processing

    async def resolve_owner(self, event: InboundEvent) -> str:
        """User whose AmoCRM subdomain or LPTracker project matches the event"""
        if isinstance(event, AmoCrmEvent):
            platform, wanted = Platform.AMOCRM, event.subdomain
            attribute = "subdomain"
        else:
            platform, wanted = Platform.LPTRACKER, event.project_id
            attribute = "project_id"

        if not wanted:
            raise OwnerResolutionError(f"{event.source.value} webhook has no {attribute}")

        for settings in await self.store.get_all_settings(platform):
            value = getattr(settings, attribute)
            if value is not None and str(value) == str(wanted):
                return settings.user_id

        raise OwnerResolutionError(
            f"No user found for {attribute} {wanted}",
            {attribute: wanted}
        )

    async def process(self, source: Union[str, WebhookSource], payload: Dict[str, Any]) -> None:
        """
        Process one webhook. Terminal conditions (no owner, no lead id,
        undecodable payload) are logged and end the job successfully; any
        other exception propagates so the queue retries the job.
        """
        source = WebhookSource(source)
        user_id: Optional[str] = None

        try:
            event = parse_event(source, payload)
            user_id = await self.resolve_owner(event)

            if not event.external_id:
                raise EntityIdMissingError(
                    f"{source.value} webhook carries no lead id",
                    {"available_keys": list(payload.keys())[:50]}
                )
        except TerminalWebhookError as e:
            self.log_sink.record(e.log_level, user_id, str(e), {"source": source.value, **e.context})
            return

        context = EventContext(event=event, user_id=user_id)
        await self.enricher.enrich(context)

        rules = await self.candidate_rules(user_id, source)
        if not rules:
            self.log_sink.info(user_id, "No active rules for webhook", {"source": source.value})
            return

        for rule in rules:
            await self._process_rule(rule, context)

    async def candidate_rules(self, user_id: str, source: WebhookSource) -> List[SyncRule]:
        """Active rules of the user for this source, in stored order"""
        rules = await self.config_cache.get_sync_rules(user_id)
        return [r for r in rules if r.is_active and r.webhook_source == source.value]

    async def _process_rule(self, rule: SyncRule, context: EventContext) -> bool:
        """Returns True when at least one of the rule's actions was dispatched"""
        try:
            return await self._run_rule(rule, context)
        except RuleEvaluationError as e:
            cause = e.__cause__
            self.log_sink.error(
                context.user_id,
                f"Rule processing failed: {rule.name}",
                {**e.context, "error": str(cause), "error_type": type(cause).__name__}
            )
            return False

    async def _run_rule(self, rule: SyncRule, context: EventContext) -> bool:
        user_id = context.user_id
        rule_context = {"rule_id": rule.id, "rule_name": rule.name, "external_id": context.external_id}

        try:
            if not is_relevant(context.event.updated_fields, rule):
                self.log_sink.info(
                    user_id,
                    "Changed fields not used by rule, skipped",
                    {**rule_context, "updated_fields": context.event.updated_fields}
                )
                return False

            if not evaluate_conditions(rule.conditions, context):
                logger.debug("Rule conditions not met", **rule_context)
                return False

            dedup_key = self.dedup.build_key(
                user_id, context.external_id, rule.id, context.event.action_timestamp
            )
            if await self.dedup.exists(dedup_key):
                self.log_sink.info(user_id, "Webhook already processed for rule, skipped", {**rule_context, "dedup_key": dedup_key})
                return False

            self.log_sink.info(user_id, f"Rule matched: {rule.name}", rule_context)
            succeeded = await self.dispatcher.dispatch(rule.actions, context)
            if not succeeded:
                # без отметки повторная доставка попробует снова
                self.log_sink.warning(
                    user_id,
                    f"No action succeeded for rule: {rule.name}",
                    {**rule_context, "actions": len(rule.action_list)}
                )
                return False

            await self.dedup.mark(dedup_key)
            await self.store.increment_rule_execution(rule.id)
            return True

        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise RuleEvaluationError(str(e), rule_context) from e

    # Admin

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        return self.queue.get_stats()

    async def get_performance_metrics(self) -> Dict[str, Any]:
        performance: Dict[str, Any] = {
            "cacheStats": {
                kind.value: {"size": await self.config_cache.size(kind)}
                for kind in CacheKind
            },
            "logSink": {"pending": self.log_sink.pending(), "dropped": self.log_sink.dropped},
        }
        if self.monitoring is not None:
            performance.update(self.monitoring.performance_snapshot())

        return {
            "queue": self.get_queue_stats(),
            "performance": performance,
            "timestamp": int(time.time() * 1000),
        }

    async def invalidate_user_cache(self, user_id: str) -> Dict[str, int]:
        """Drop cached configuration and dedup markers of one user"""
        result = {
            "config": await self.config_cache.invalidate(user_id),
            "dedup": await self.dedup.clear_user(user_id),
        }
        self.log_sink.info(user_id, "User cache cleared", result, category="cache")
        return result

    async def clear_all_caches(self) -> Dict[str, int]:
        result = {
            "config": await self.config_cache.clear_all(),
            "dedup": await self.dedup.clear_all(),
        }
        self.log_sink.info(None, "All caches cleared", result, category="cache")
        return result

    async def preload_critical_data(self, user_id: str) -> None:
        """Warm the config cache with a user's rules, settings and main metadata"""
        await self.config_cache.get_sync_rules(user_id)
        for platform in Platform:
            await self.config_cache.get_settings(user_id, platform)
        for platform, kind in CRITICAL_METADATA:
            await self.config_cache.get_metadata(user_id, platform, kind)
        logger.info("Critical data preloaded", user_id=user_id)
