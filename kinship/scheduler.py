import asyncio
import logging
from datetime import datetime, timezone

from kinship.core.config import settings
from kinship.utils.deps import get_engine

log = logging.getLogger("scheduler")

_scheduler_task: asyncio.Task | None = None


async def _run_sweep_once():
    """Settles lapsed cooling-off windows so notifications go out without waiting for a read."""
    try:
        settled = await get_engine().settle_due()
        log.info(f"[SCHEDULER] Cooling-off sweep complete: settled={settled}")
        return settled
    except Exception as e:
        log.exception(f"[SCHEDULER] Cooling-off sweep failed: {e}")
        return 0


async def _scheduler_loop():
    interval_seconds = settings.COOLING_OFF_SWEEP_INTERVAL_MINUTES * 60

    log.info(
        f"[SCHEDULER] Starting cooling-off sweep: "
        f"interval={settings.COOLING_OFF_SWEEP_INTERVAL_MINUTES}m"
    )

    while True:
        try:
            log.info(f"[SCHEDULER] Running cooling-off sweep at {datetime.now(timezone.utc).isoformat()}")
            await _run_sweep_once()
        except asyncio.CancelledError:
            log.info("[SCHEDULER] Scheduler cancelled, shutting down")
            break

        await asyncio.sleep(interval_seconds)


def start_scheduler():
    global _scheduler_task

    if not settings.COOLING_OFF_SWEEP_ENABLED:
        log.info("[SCHEDULER] Cooling-off sweep is disabled (COOLING_OFF_SWEEP_ENABLED=false)")
        return

    if _scheduler_task is not None:
        log.warning("[SCHEDULER] Scheduler already running")
        return

    _scheduler_task = asyncio.create_task(_scheduler_loop())
    log.info("[SCHEDULER] Cooling-off sweep started")


def stop_scheduler():
    global _scheduler_task

    if _scheduler_task is not None:
        _scheduler_task.cancel()
        _scheduler_task = None
        log.info("[SCHEDULER] Cooling-off sweep stopped")
