"""
Reconciliation sweep worker.

Periodically re-runs reconciliation for checkouts that were paid but never
applied, for example when the webhook timed out or was never delivered.
Run with ``python -m workers.reconciliation_worker``.
"""
import asyncio
from typing import Optional

from portal.core.config import settings
from portal.core.logging import configure_structlog, get_structlog_logger
from portal.db.session import dispose_engine, transaction_session
from portal.services.payment_gateway import StripeGateway
from portal.services.reconciliation import sweep_unfinished
from portal.services.redis import (
    RedisLock,
    RedisUnavailableError,
    close_redis_pool,
    get_redis_client,
    init_redis_pool,
)

configure_structlog()
logger = get_structlog_logger(__name__)

SWEEP_LOCK_KEY = "reconciliation-sweep"


async def run_sweep(gateway: StripeGateway) -> dict:
    async with transaction_session() as session:
        return await sweep_unfinished(session, gateway, limit=settings.reconciliation_batch_size)


async def _sweep_lock() -> Optional[RedisLock]:
    """Lock shared by all worker replicas; None when Redis is not available."""
    try:
        client = await get_redis_client()
    except RedisUnavailableError:
        return None
    return RedisLock(client, SWEEP_LOCK_KEY, timeout=settings.reconciliation_sweep_interval_seconds)


async def worker_main() -> None:
    logger.info("reconciliation_worker.starting", interval=settings.reconciliation_sweep_interval_seconds)

    try:
        await init_redis_pool()
    except RedisUnavailableError as e:
        logger.warning("reconciliation_worker.redis_unavailable", error=str(e))

    gateway = StripeGateway()
    try:
        while True:
            lock = await _sweep_lock()
            if lock is None or await lock.acquire():
                try:
                    await run_sweep(gateway)
                except Exception as e:
                    logger.error("reconciliation_worker.sweep_failed", error=str(e), exc_info=True)
                finally:
                    if lock is not None:
                        await lock.release()
            else:
                logger.debug("reconciliation_worker.sweep_skipped", reason="lock_held")

            await asyncio.sleep(settings.reconciliation_sweep_interval_seconds)
    finally:
        await close_redis_pool()
        await dispose_engine()
        logger.info("reconciliation_worker.stopped")


if __name__ == "__main__":
    asyncio.run(worker_main())
