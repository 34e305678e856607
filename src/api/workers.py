import asyncio
import logging
from datetime import date, datetime, timedelta

from api import state
from api.dependencies import get_claim_manager, get_notification_processor, get_notification_scheduler
from api.metrics import NOTIFICATIONS_CREATED_TOTAL, NOTIFICATIONS_PROCESSED_TOTAL

logger = logging.getLogger(__name__)

STALE_RECOVERY_INTERVAL_S = 60


async def _notification_worker() -> None:
    """Sweep due notifications and make sure tomorrow's summaries exist."""
    logger.info("Notification worker started")

    while True:
        try:
            tomorrow = date.today() + timedelta(days=1)
            summaries = await get_notification_scheduler().create_daily_summaries(tomorrow)
            if summaries:
                NOTIFICATIONS_CREATED_TOTAL.labels(type="daily_summary").inc(len(summaries))

            counts = await get_notification_processor().process_pending(datetime.now())
            for outcome in ("sent", "delivered", "failed"):
                if counts[outcome]:
                    NOTIFICATIONS_PROCESSED_TOTAL.labels(outcome=outcome).inc(counts[outcome])
        except Exception as e:
            logger.exception(f"Error in notification worker: {e}")

        await asyncio.sleep(state.settings.notification_poll_interval_s)


async def _stale_recovery_worker() -> None:
    """Periodically unlock analysis claims whose worker never reported back."""
    logger.info("Stale claim recovery worker started")

    while True:
        await asyncio.sleep(STALE_RECOVERY_INTERVAL_S)

        try:
            recovered = await get_claim_manager().recover_stale(state.settings.stale_claim_timeout_minutes)
            if recovered:
                logger.warning(f"Recovered {len(recovered)} stale claims")
        except Exception as e:
            logger.error(f"Error in stale recovery worker: {e}")


def start_workers() -> None:
    state.worker_tasks.append(asyncio.create_task(_notification_worker()))
    state.worker_tasks.append(asyncio.create_task(_stale_recovery_worker()))


async def stop_workers() -> None:
    for task in state.worker_tasks:
        task.cancel()
    await asyncio.gather(*state.worker_tasks, return_exceptions=True)
    state.worker_tasks.clear()
