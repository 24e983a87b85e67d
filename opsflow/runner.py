"""
Always-on worker runner: timer_loop claims due automation timers and fires
them through the AutomationScheduler.

Usage:
  python -m opsflow.runner
"""
from __future__ import annotations

import asyncio
import logging
import random
import signal

from opsflow.config import settings
from opsflow.deps import close_services, init_services

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Shutdown flag
_shutdown_event: asyncio.Event | None = None


def _jitter_sleep_seconds(min_ms: int, max_ms: int) -> float:
    """Return a random sleep duration in seconds between min_ms and max_ms."""
    return random.randint(min_ms, max_ms) / 1000.0


async def timer_loop() -> None:
    """Continuously fire due automation timers."""
    global _shutdown_event
    assert _shutdown_event is not None

    services = await init_services()
    logger.info(
        "timer_loop started (poll %d-%dms, batch %d)",
        settings.timer_poll_min_ms,
        settings.timer_poll_max_ms,
        settings.timer_batch_size,
    )
    iteration = 0

    while not _shutdown_event.is_set():
        iteration += 1
        result = {"claimed": 0, "fired": 0, "failed": 0, "skipped": 0}

        try:
            result = await services.scheduler.tick(limit=settings.timer_batch_size)
        except Exception as e:
            logger.error("timer_loop iteration %d error: %s", iteration, e)

        if result.get("claimed", 0) > 0:
            logger.info(
                "timer_loop #%d: claimed=%d fired=%d failed=%d skipped=%d",
                iteration,
                result.get("claimed", 0),
                result.get("fired", 0),
                result.get("failed", 0),
                result.get("skipped", 0),
            )

        # Jittered sleep
        sleep_sec = _jitter_sleep_seconds(settings.timer_poll_min_ms, settings.timer_poll_max_ms)
        try:
            await asyncio.wait_for(_shutdown_event.wait(), timeout=sleep_sec)
        except asyncio.TimeoutError:
            pass  # Normal timeout, continue loop

    logger.info("timer_loop shutting down")


def _handle_shutdown(signum, frame) -> None:
    """Signal handler for graceful shutdown."""
    global _shutdown_event
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating graceful shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


async def main() -> None:
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    logger.info("Starting opsflow timer runner (worker_id=%s)", settings.worker_id)

    try:
        await timer_loop()
    finally:
        logger.info("Draining background side effects and closing store...")
        await close_services()
        logger.info("Timer runner stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass  # Already handled by signal handler
