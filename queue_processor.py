"""Misconception Queue Processor — batch drain of pending explanation requests.

Invoked by the scheduler or a cron endpoint, never from the request path.
Each run claims at most QUEUE_BATCH_SIZE rows, serves what it can from the
explanation cache, generates the rest through the Deepseek -> OpenAI chain,
then sweeps old completed rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from ai_resilience import (
    AllProvidersFailedError,
    LLMProvider,
    call_with_fallback,
    provider_chain,
)
from database import rollback_db
from db_stores import (
    ExplanationCacheDB,
    MisconceptionQueueDB,
    QueueItem,
    explanation_cache_key,
)

logger = logging.getLogger(__name__)

EXPLANATION_PROVIDERS = ("deepseek", "openai")

QUEUE_EXPLANATION_PROMPT = """\
Explain this math misconception to a student: {misconception_code}.
Question: {question_id}
Student answered: {student_answer}
Correct answer: {correct_answer}

Provide a brief, encouraging explanation (max 100 words) that helps the student understand their mistake."""


@dataclass
class BatchResult:
    processed: int = 0
    api_calls: int = 0
    cache_hits: int = 0
    failed: int = 0
    skipped: int = 0
    message: str = ""

    @property
    def optimization_rate(self) -> int:
        if self.cache_hits == 0:
            return 0
        return int(100 * self.cache_hits / (self.api_calls + self.cache_hits) + 0.5)

    def to_dict(self) -> dict:
        result = {
            "success": True,
            "processed": self.processed,
            "apiCalls": self.api_calls,
            "cacheHits": self.cache_hits,
            "failed": self.failed,
            "skipped": self.skipped,
            "optimizationRate": self.optimization_rate,
        }
        if self.message:
            result["message"] = self.message
        return result


class MisconceptionQueueProcessor:
    """Drains the misconception queue in bounded batches."""

    def __init__(self, providers: list[LLMProvider], batch_size: int = 10,
                 max_retries: int = 3, retry_backoff_seconds: int = 60,
                 retention_days: int = 7, claim_timeout_seconds: int = 300):
        self.providers = providers
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retention_days = retention_days
        self.claim_timeout_seconds = claim_timeout_seconds
        self.queue = MisconceptionQueueDB()
        self.cache = ExplanationCacheDB()

    @classmethod
    def from_config(cls, config) -> MisconceptionQueueProcessor:
        return cls(
            providers=provider_chain(config, EXPLANATION_PROVIDERS),
            batch_size=config.get("QUEUE_BATCH_SIZE", 10),
            max_retries=config.get("QUEUE_MAX_RETRIES", 3),
            retry_backoff_seconds=config.get("QUEUE_RETRY_BACKOFF_SECONDS", 60),
            retention_days=config.get("QUEUE_RETENTION_DAYS", 7),
            claim_timeout_seconds=config.get("QUEUE_CLAIM_TIMEOUT_SECONDS", 300),
        )

    def run(self) -> dict:
        """Process one batch. Returns the JSON-ready summary."""
        if not self.providers:
            logger.info("No AI API keys configured - queue processor in optimization mode")
            return BatchResult(message="Queue processor running in optimization mode").to_dict()

        result = BatchResult()
        self._release_stale_claims()
        items = self.queue.next_batch(self.batch_size, self.max_retries)
        if not items:
            result.message = "No items in queue"
        else:
            logger.info("Processing %d queue items", len(items))

        for item in items:
            if not self.queue.claim(item.id, item.status):
                # another run claimed it between the read and the update
                result.skipped += 1
                continue
            try:
                self._process_item(item, result)
            except Exception as e:
                rollback_db()
                logger.error("Error processing queue item %s: %s", item.id, e, exc_info=True)
                self._mark_failed(item, str(e))
                result.failed += 1

        self._sweep()

        logger.info(
            "Batch processing complete: %d processed, %d API calls, %d cache hits, %d failed",
            result.processed, result.api_calls, result.cache_hits, result.failed,
        )
        return result.to_dict()

    def _process_item(self, item: QueueItem, result: BatchResult) -> None:
        cache_key = explanation_cache_key(item.student_id, item.question_id, item.misconception_code)

        if self.cache.get(cache_key) is not None:
            logger.debug("Cache hit for %s", cache_key)
            result.cache_hits += 1
            self.queue.complete(item.id)
            result.processed += 1
            return

        if not item.misconception_code:
            # nothing to explain without a diagnosed misconception
            self.queue.complete(item.id)
            result.processed += 1
            return

        prompt = QUEUE_EXPLANATION_PROMPT.format(
            misconception_code=item.misconception_code,
            question_id=item.question_id,
            student_answer=item.student_answer,
            correct_answer=item.correct_answer,
        )
        try:
            explanation, provider, _metrics = call_with_fallback(
                self.providers, prompt, max_tokens=150, temperature=0.7,
            )
        except AllProvidersFailedError as e:
            logger.warning("Explanation generation failed for queue item %s: %s", item.id, e)
            self._mark_failed(item, str(e))
            result.failed += 1
            return

        result.api_calls += 1
        self.cache.put(cache_key, explanation, provider)
        self.queue.complete(item.id)
        result.processed += 1

    def _retry_at(self, retry_count: int) -> str:
        delay = self.retry_backoff_seconds * 2 ** max(retry_count - 1, 0)
        return (datetime.now() + timedelta(seconds=delay)).isoformat()

    def _mark_failed(self, item: QueueItem, error: str) -> None:
        try:
            self.queue.fail(item.id, error, self._retry_at(item.retry_count + 1))
        except Exception as e:
            rollback_db()
            logger.error("Could not mark queue item %s failed: %s", item.id, e)

    def _release_stale_claims(self) -> None:
        """Fail rows whose claim outlived the lease so the retry budget applies."""
        try:
            stale = self.queue.stale_claims(self.claim_timeout_seconds)
        except Exception as e:
            rollback_db()
            logger.warning("Stale claim scan failed: %s", e)
            return
        for item in stale:
            logger.warning("Queue item %s held in processing past %ds; releasing",
                           item.id, self.claim_timeout_seconds)
            self._mark_failed(item, "claim expired before processing finished")

    def _sweep(self) -> None:
        try:
            removed = self.queue.purge_completed(self.retention_days)
        except Exception as e:
            rollback_db()
            logger.warning("Queue retention sweep failed: %s", e)
            return
        if removed:
            logger.info("Removed %d completed queue items older than %d days",
                        removed, self.retention_days)


def process_queue(config) -> dict:
    """Run one batch with settings from app config."""
    return MisconceptionQueueProcessor.from_config(config).run()
