"""
Centralized Scheduler — Registers all periodic background jobs.

Jobs:
  - Misconception queue drain (every QUEUE_PROCESS_INTERVAL_MINUTES)
  - Explanation cache eviction (daily, 3 AM)
  - TTL cache cleanup (every 1 hour)

Serverless deployments skip this and hit the /api/cron/* endpoints instead.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


def drain_misconception_queue(app) -> dict | None:
    """Process one queue batch inside an app context."""
    with app.app_context():
        from database import ensure_initialized
        from queue_processor import process_queue

        try:
            ensure_initialized(app)
            return process_queue(app.config)
        except Exception as e:
            logger.error("Scheduled queue drain failed: %s", e, exc_info=True)
            return None


def evict_explanation_cache(app) -> int:
    """Drop explanation cache entries not read within the TTL window."""
    with app.app_context():
        from database import ensure_initialized
        from db_stores import ExplanationCacheDB

        try:
            ensure_initialized(app)
            removed = ExplanationCacheDB().evict_stale(app.config.get("EXPLANATION_CACHE_TTL_DAYS", 30))
        except Exception as e:
            logger.error("Explanation cache eviction failed: %s", e, exc_info=True)
            return 0
        if removed:
            logger.info("Evicted %d stale explanation cache entries", removed)
        return removed


def cleanup_ttl_cache() -> int:
    from cache_backend import get_cache

    return get_cache().cleanup()


def init_scheduler(app) -> BackgroundScheduler:
    """Start a background scheduler for all periodic jobs."""
    scheduler = BackgroundScheduler(daemon=True)

    # 1. Misconception queue drain
    scheduler.add_job(
        func=drain_misconception_queue,
        args=[app],
        trigger="interval",
        minutes=app.config.get("QUEUE_PROCESS_INTERVAL_MINUTES", 5),
        id="misconception_queue",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # 2. Explanation cache eviction, cron at 3 AM
    scheduler.add_job(
        func=evict_explanation_cache,
        args=[app],
        trigger="cron",
        hour=3,
        id="explanation_cache_eviction",
        replace_existing=True,
    )

    # 3. TTL cache cleanup, every hour
    scheduler.add_job(
        func=cleanup_ttl_cache,
        trigger="interval",
        hours=1,
        id="cache_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    app.logger.info("Scheduler started (queue drain, cache eviction, cache cleanup)")
    return scheduler
