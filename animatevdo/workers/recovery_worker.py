"""Recovery Worker: drains the recovery queue of retryable stage failures.

Key Responsibilities:
- Claim due ``pending`` recovery entries (FOR UPDATE SKIP LOCKED)
- Re-run the failed stage through the PipelineOrchestrator without queueing
  a second entry for the same failure
- Complete, reschedule (exponential delay) or give up on each entry
- Send a Discord alert when an entry exhausts its retries
- Graceful shutdown on SIGTERM/SIGINT

Architecture Pattern: "Short Transaction + Long Processing"
- Claim entries atomically and close the transaction
- Re-run the stage (provider calls, outside any transaction)
- Record the outcome in a new short transaction

Usage:
    # Drain due entries once and exit (cron / testing)
    python -m animatevdo.workers.recovery_worker --once

    # Poll forever (production)
    python -m animatevdo.workers.recovery_worker
"""

import asyncio
import signal
import sys
from collections import Counter
from typing import Any

from animatevdo.clients.factory import build_capabilities
from animatevdo.config import Settings, load_settings
from animatevdo.constants import STAGE_SERVICE_NAMES
from animatevdo.database import create_engine_from_settings, create_session_factory
from animatevdo.exceptions import ServiceError
from animatevdo.models import RecoveryQueueEntry, RecoveryStatus
from animatevdo.services.error_classifier import classify
from animatevdo.services.pipeline_orchestrator import PipelineOrchestrator
from animatevdo.utils.alerts import send_alert
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)

# Global shutdown flag for graceful shutdown
SHUTDOWN_REQUESTED = False


def signal_handler(signum: int, frame: Any) -> None:
    """Stop claiming new entries; the entry in progress is finished first."""
    global SHUTDOWN_REQUESTED
    SHUTDOWN_REQUESTED = True
    log.info("shutdown_signal_received", signal=signum)


async def _record_failure(
    orchestrator: PipelineOrchestrator,
    entry: RecoveryQueueEntry,
    error: ServiceError,
) -> RecoveryStatus:
    updated = await orchestrator.recovery_queue.mark_attempt_failed(entry.id, error)
    if updated is None:
        return RecoveryStatus.FAILED
    if updated.status == RecoveryStatus.FAILED:
        await send_alert(
            orchestrator.settings.discord_webhook_url,
            "CRITICAL",
            f"Recovery gave up on the {entry.stage.value} stage after {updated.retry_count} attempts",
            details={
                "project_id": str(entry.project_id),
                "stage": entry.stage.value,
                "error_code": error.code.value,
                "retryable": str(error.retryable),
            },
        )
    return updated.status


async def process_entry(orchestrator: PipelineOrchestrator, entry: RecoveryQueueEntry) -> RecoveryStatus:
    """Re-run one claimed entry's stage and record the outcome.

    Unexpected exceptions (a database error while persisting the stage
    result, a bug in a stage) count as a failed attempt like any
    ServiceError, so the entry is rescheduled instead of stuck in
    processing.

    Returns:
        The entry's resulting status.
    """
    entry_log = log.bind(entry_id=str(entry.id), project_id=str(entry.project_id), stage=entry.stage.value)
    entry_log.info("recovery_attempt_started", retry_count=entry.retry_count)

    try:
        await orchestrator.run_stage(entry.stage, entry.project_id, enqueue_recovery=False)
    except ServiceError as e:
        return await _record_failure(orchestrator, entry, e)
    except Exception as e:
        entry_log.error(
            "recovery_attempt_crashed",
            error_type=type(e).__name__,
            error_message=str(e),
        )
        return await _record_failure(orchestrator, entry, classify(e, STAGE_SERVICE_NAMES[entry.stage.value]))

    await orchestrator.recovery_queue.mark_completed(entry.id)
    entry_log.info("recovery_attempt_succeeded")
    return RecoveryStatus.COMPLETED


async def drain_once(orchestrator: PipelineOrchestrator, settings: Settings) -> Counter:
    """Claim one batch of due entries and process them sequentially.

    Returns:
        Count of resulting statuses, e.g. ``Counter({"completed": 2, "pending": 1})``.
    """
    entries = await orchestrator.recovery_queue.claim_due(settings.recovery_batch_size)
    outcomes: Counter = Counter()
    for entry in entries:
        status = await process_entry(orchestrator, entry)
        outcomes[status.value] += 1

    if entries:
        log.info("recovery_batch_processed", **dict(outcomes))
    return outcomes


async def worker_loop(orchestrator: PipelineOrchestrator, settings: Settings) -> None:
    """Poll the recovery queue until shutdown is requested.

    The loop never crashes: unexpected errors (e.g. a lost database
    connection) are logged and the loop sleeps before polling again.
    """
    log.info("recovery_worker_started", poll_interval_seconds=settings.recovery_poll_interval_seconds)

    while not SHUTDOWN_REQUESTED:
        try:
            outcomes = await drain_once(orchestrator, settings)
            if not outcomes:
                log.debug("no_recovery_entries_due")
                await asyncio.sleep(settings.recovery_poll_interval_seconds)
        except Exception as e:
            log.error(
                "recovery_worker_loop_error",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            await asyncio.sleep(settings.recovery_poll_interval_seconds)

    log.info("recovery_worker_stopped", reason="shutdown_requested")


async def main() -> None:
    """Entry point for the worker process (``--once`` drains a single batch)."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    settings = load_settings()
    engine = create_engine_from_settings(settings)
    capabilities = build_capabilities(settings)
    orchestrator = PipelineOrchestrator.from_settings(settings, create_session_factory(engine), capabilities)

    try:
        if "--once" in sys.argv[1:]:
            await drain_once(orchestrator, settings)
            await orchestrator.wait_for_background()
        else:
            await worker_loop(orchestrator, settings)
    finally:
        await orchestrator.close()
        await capabilities.close()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
