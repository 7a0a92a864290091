"""Tests for the recovery worker.

Tests cover:
- process_entry / drain_once against a real (SQLite) recovery queue
- Completing, rescheduling and giving up on entries
- Discord alert when an entry is given up on
- worker_loop polling, error resilience and shutdown
- Signal handling and the --once entry point
"""

import signal
from collections import Counter
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest
import pytest_asyncio

from animatevdo.clients.base import ProviderAPIError
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import RecoveryStatus, Stage
from animatevdo.services.pipeline_orchestrator import PipelineOrchestrator
from animatevdo.services.recovery_queue import RecoveryQueue
from animatevdo.workers import recovery_worker


@pytest.fixture(autouse=True)
def reset_shutdown_flag():
    recovery_worker.SHUTDOWN_REQUESTED = False
    yield
    recovery_worker.SHUTDOWN_REQUESTED = False


@pytest_asyncio.fixture
async def due_entry(session_factory, settings, project):
    """A research recovery entry that is due immediately."""
    queue = RecoveryQueue(session_factory, replace(settings, recovery_delay_seconds=0))
    error = ServiceError(ErrorCode.API_SERVICE_DOWN, "Research service is temporarily unavailable", retryable=True)
    return await queue.enqueue(project.id, Stage.RESEARCH, error)


def _failing_orchestrator(settings, session_factory, capabilities, retry_options, recorded_sleep, status_code):
    researcher = AsyncMock()
    researcher.research.side_effect = ProviderAPIError("Tavily", status_code, "failure")
    return PipelineOrchestrator.from_settings(
        settings,
        session_factory,
        replace(capabilities, research=researcher),
        retry_options=retry_options,
        sleep=recorded_sleep,
    )


class TestDrainOnce:
    async def test_p0_successful_rerun_completes_entry(self, orchestrator, settings, due_entry, project):
        """[P0] A due entry whose stage now succeeds is completed.

        GIVEN: A pending research entry that is due
        WHEN: The worker drains the queue
        THEN: The research stage completes and the entry is marked completed
        AND: No second recovery entry is created
        """
        outcomes = await recovery_worker.drain_once(orchestrator, settings)

        assert outcomes == Counter({"completed": 1})
        entries = await orchestrator.recovery_queue.list_for_project(project.id)
        assert [e.status for e in entries] == [RecoveryStatus.COMPLETED]
        assert (await orchestrator.progress.get(project.id)).research is True

    async def test_p0_retryable_failure_reschedules(
        self, settings, session_factory, mock_capabilities, retry_options, recorded_sleep, due_entry, project
    ):
        orchestrator = _failing_orchestrator(
            settings, session_factory, mock_capabilities, retry_options, recorded_sleep, 503
        )

        outcomes = await recovery_worker.drain_once(orchestrator, settings)

        assert outcomes == Counter({"pending": 1})
        entries = await orchestrator.recovery_queue.list_for_project(project.id)
        assert len(entries) == 1
        assert entries[0].retry_count == 1
        assert entries[0].status == RecoveryStatus.PENDING

    async def test_p0_permanent_failure_gives_up_and_alerts(
        self, settings, session_factory, mock_capabilities, retry_options, recorded_sleep, due_entry, project
    ):
        """[P0] A non-retryable failure fails the entry and alerts Discord."""
        orchestrator = _failing_orchestrator(
            settings, session_factory, mock_capabilities, retry_options, recorded_sleep, 401
        )

        with patch("animatevdo.workers.recovery_worker.send_alert", new_callable=AsyncMock) as mock_alert:
            outcomes = await recovery_worker.drain_once(orchestrator, settings)

        assert outcomes == Counter({"failed": 1})
        mock_alert.assert_awaited_once()
        assert mock_alert.await_args.args[1] == "CRITICAL"
        details = mock_alert.await_args.kwargs["details"]
        assert details["error_code"] == "API_KEY_MISSING"
        assert details["project_id"] == str(project.id)

    async def test_p0_unexpected_error_reschedules_every_claimed_entry(
        self, orchestrator, settings, session_factory, due_entry, project
    ):
        """[P0] A crash outside ServiceError still records a failed attempt.

        GIVEN: Two due entries and a stage re-run that raises RuntimeError
        WHEN: The worker drains the queue
        THEN: Both entries go back to pending with retry_count 1
        AND: A later drain with a working re-run completes them
        """
        queue = RecoveryQueue(session_factory, replace(settings, recovery_delay_seconds=0))
        error = ServiceError(ErrorCode.API_SERVICE_DOWN, "Script Generation service is temporarily unavailable")
        await queue.enqueue(project.id, Stage.SCRIPT, error)

        with patch.object(
            orchestrator, "run_stage", AsyncMock(side_effect=RuntimeError("database connection lost"))
        ):
            outcomes = await recovery_worker.drain_once(orchestrator, settings)

        assert outcomes == Counter({"pending": 2})
        entries = await orchestrator.recovery_queue.list_for_project(project.id)
        assert [e.status for e in entries] == [RecoveryStatus.PENDING, RecoveryStatus.PENDING]
        assert [e.retry_count for e in entries] == [1, 1]
        assert {e.error_code for e in entries} == {"UNKNOWN_ERROR"}

        later = max(e.next_retry_at for e in entries) + timedelta(seconds=1)
        with patch.object(orchestrator, "run_stage", AsyncMock()):
            claimed = await orchestrator.recovery_queue.claim_due(now=later)
            for entry in claimed:
                assert await recovery_worker.process_entry(orchestrator, entry) == RecoveryStatus.COMPLETED

        assert len(claimed) == 2

    async def test_nothing_due(self, orchestrator, settings):
        assert await recovery_worker.drain_once(orchestrator, settings) == Counter()


class TestWorkerLoop:
    @pytest.fixture
    def idle_orchestrator(self):
        orchestrator = Mock()
        orchestrator.recovery_queue.claim_due = AsyncMock(return_value=[])
        return orchestrator

    async def test_sleeps_when_nothing_due(self, idle_orchestrator, settings):
        async def stop_after_sleep(duration):
            recovery_worker.SHUTDOWN_REQUESTED = True

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_sleep.side_effect = stop_after_sleep
            await recovery_worker.worker_loop(idle_orchestrator, settings)

        mock_sleep.assert_awaited_once_with(settings.recovery_poll_interval_seconds)

    async def test_p1_loop_survives_errors(self, idle_orchestrator, settings):
        """[P1] A database error is logged and the loop keeps polling."""
        idle_orchestrator.recovery_queue.claim_due.side_effect = [RuntimeError("database unavailable"), []]
        sleeps = []

        async def record_sleep(duration):
            sleeps.append(duration)
            if len(sleeps) == 2:
                recovery_worker.SHUTDOWN_REQUESTED = True

        with patch("asyncio.sleep", new=record_sleep):
            await recovery_worker.worker_loop(idle_orchestrator, settings)

        assert idle_orchestrator.recovery_queue.claim_due.await_count == 2

    async def test_respects_shutdown(self, idle_orchestrator, settings):
        recovery_worker.SHUTDOWN_REQUESTED = True

        await recovery_worker.worker_loop(idle_orchestrator, settings)

        idle_orchestrator.recovery_queue.claim_due.assert_not_awaited()


class TestSignalHandler:
    @pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
    def test_sets_shutdown_flag(self, signum):
        recovery_worker.signal_handler(signum, None)

        assert recovery_worker.SHUTDOWN_REQUESTED is True


class TestMain:
    async def test_once_mode_drains_single_batch(self, settings):
        orchestrator = Mock(close=AsyncMock(), wait_for_background=AsyncMock())
        capabilities = Mock(close=AsyncMock())
        engine = Mock(dispose=AsyncMock())

        with (
            patch.object(recovery_worker.signal, "signal"),
            patch.object(recovery_worker, "load_settings", return_value=settings),
            patch.object(recovery_worker, "create_engine_from_settings", return_value=engine),
            patch.object(recovery_worker, "create_session_factory"),
            patch.object(recovery_worker, "build_capabilities", return_value=capabilities),
            patch.object(recovery_worker.PipelineOrchestrator, "from_settings", return_value=orchestrator),
            patch.object(recovery_worker, "drain_once", new_callable=AsyncMock) as mock_drain,
            patch.object(recovery_worker, "worker_loop", new_callable=AsyncMock) as mock_loop,
            patch("sys.argv", ["recovery_worker.py", "--once"]),
        ):
            await recovery_worker.main()

        mock_drain.assert_awaited_once_with(orchestrator, settings)
        mock_loop.assert_not_awaited()
        orchestrator.close.assert_awaited_once()
        capabilities.close.assert_awaited_once()
        engine.dispose.assert_awaited_once()

    async def test_default_mode_runs_loop(self, settings):
        orchestrator = Mock(close=AsyncMock())

        with (
            patch.object(recovery_worker.signal, "signal"),
            patch.object(recovery_worker, "load_settings", return_value=settings),
            patch.object(recovery_worker, "create_engine_from_settings", return_value=Mock(dispose=AsyncMock())),
            patch.object(recovery_worker, "create_session_factory"),
            patch.object(recovery_worker, "build_capabilities", return_value=Mock(close=AsyncMock())),
            patch.object(recovery_worker.PipelineOrchestrator, "from_settings", return_value=orchestrator),
            patch.object(recovery_worker, "worker_loop", new_callable=AsyncMock) as mock_loop,
            patch("sys.argv", ["recovery_worker.py"]),
        ):
            await recovery_worker.main()

        mock_loop.assert_awaited_once_with(orchestrator, settings)
