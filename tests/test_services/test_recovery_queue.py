"""Tests for RecoveryQueue: enqueue, claim, reschedule and give up."""

from datetime import timedelta

from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import RecoveryStatus, Stage, utcnow

SERVICE_DOWN = ServiceError(ErrorCode.API_SERVICE_DOWN, "Voice Synthesis service is temporarily unavailable", retryable=True)
KEY_MISSING = ServiceError(ErrorCode.API_KEY_MISSING, "Voice Synthesis API key is missing or invalid", retryable=False)


class TestEnqueue:
    async def test_p0_entry_due_after_recovery_delay(self, recovery_queue, project):
        """[P0] New entries are pending, retry_count 0, due ~5 minutes later."""
        before = utcnow()

        entry = await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)

        assert entry.status == RecoveryStatus.PENDING
        assert entry.retry_count == 0
        assert entry.max_retries == 3
        assert entry.error_code == "API_SERVICE_DOWN"
        delay = entry.next_retry_at - before
        assert timedelta(seconds=299) <= delay <= timedelta(seconds=301)

    async def test_entries_listed_per_project(self, recovery_queue, project):
        await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)
        await recovery_queue.enqueue(project.id, Stage.VIDEO, SERVICE_DOWN)

        entries = await recovery_queue.list_for_project(project.id)

        assert [entry.stage for entry in entries] == [Stage.AUDIO, Stage.VIDEO]


class TestClaimDue:
    async def test_p0_only_due_entries_are_claimed_once(self, recovery_queue, project):
        """[P0] Entries are claimed when due and never twice."""
        await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)

        assert await recovery_queue.claim_due(now=utcnow()) == []

        later = utcnow() + timedelta(minutes=6)
        claimed = await recovery_queue.claim_due(now=later)
        assert len(claimed) == 1
        assert claimed[0].status == RecoveryStatus.PROCESSING

        assert await recovery_queue.claim_due(now=later) == []

    async def test_limit(self, recovery_queue, project):
        for _ in range(3):
            await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)

        claimed = await recovery_queue.claim_due(limit=2, now=utcnow() + timedelta(minutes=6))

        assert len(claimed) == 2

    async def test_p0_abandoned_claim_is_reclaimed_after_timeout(self, recovery_queue, project):
        """[P0] An entry left in processing is claimed again once its claim expires.

        GIVEN: An entry claimed by a worker that never recorded an outcome
        WHEN: claim_due runs before and after the 15 minute claim timeout
        THEN: It is skipped before and claimed again after, retry_count unchanged
        """
        await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)
        first_claim = utcnow() + timedelta(minutes=6)
        assert len(await recovery_queue.claim_due(now=first_claim)) == 1

        assert await recovery_queue.claim_due(now=first_claim + timedelta(minutes=10)) == []

        second_claim = first_claim + timedelta(minutes=16)
        reclaimed = await recovery_queue.claim_due(now=second_claim)

        assert len(reclaimed) == 1
        assert reclaimed[0].status == RecoveryStatus.PROCESSING
        assert reclaimed[0].retry_count == 0
        assert reclaimed[0].claimed_at == second_claim


class TestOutcomes:
    async def test_p0_retryable_failure_reschedules_with_doubled_delay(self, recovery_queue, project):
        """[P0] retry_count += 1 and next attempt after delay * 2**retry_count."""
        entry = await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)
        before = utcnow()

        updated = await recovery_queue.mark_attempt_failed(entry.id, SERVICE_DOWN)

        assert updated.status == RecoveryStatus.PENDING
        assert updated.retry_count == 1
        delay = updated.next_retry_at - before
        assert timedelta(seconds=599) <= delay <= timedelta(seconds=601)

    async def test_p0_gives_up_at_max_retries(self, recovery_queue, project):
        """[P0] The entry becomes failed once retry_count reaches max_retries."""
        entry = await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)

        statuses = [(await recovery_queue.mark_attempt_failed(entry.id, SERVICE_DOWN)).status for _ in range(3)]

        assert statuses == [RecoveryStatus.PENDING, RecoveryStatus.PENDING, RecoveryStatus.FAILED]

    async def test_p1_non_retryable_failure_is_terminal(self, recovery_queue, project):
        entry = await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)

        updated = await recovery_queue.mark_attempt_failed(entry.id, KEY_MISSING)

        assert updated.status == RecoveryStatus.FAILED
        assert updated.error_code == "API_KEY_MISSING"
        assert updated.completed_at is not None

    async def test_p1_mark_completed(self, recovery_queue, project):
        entry = await recovery_queue.enqueue(project.id, Stage.AUDIO, SERVICE_DOWN)

        await recovery_queue.mark_completed(entry.id)

        [stored] = await recovery_queue.list_for_project(project.id)
        assert stored.status == RecoveryStatus.COMPLETED
        assert stored.completed_at is not None
