"""Tests for usage and cost recording.

Tests cover:
- Cost computation from the rate table (per 1k tokens + per request)
- Model prefix matching for dated provider model ids
- record() never raising
- Monthly report aggregation and plan limits
"""

from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import select

from animatevdo.clients.base import TokenUsage
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import CostRate, UsageRecord
from animatevdo.services.progress_tracker import ProgressTracker
from animatevdo.services.usage_recorder import (
    UsageMetrics,
    UsageRecorder,
    _select_rate,
    compute_cost,
    estimate_tokens,
    parse_anthropic_usage,
    parse_openai_usage,
    seed_default_rates,
)


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as db, db.begin():
        inserted = await seed_default_rates(db)
    return inserted


class TestHelpers:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_parse_provider_usage(self):
        assert parse_openai_usage({"usage": {"prompt_tokens": 12, "completion_tokens": 30}}) == TokenUsage(12, 30)
        assert parse_anthropic_usage({"usage": {"input_tokens": 7, "output_tokens": 9}}) == TokenUsage(7, 9)
        assert parse_openai_usage({}) == TokenUsage(0, 0)

    def test_compute_cost(self):
        rate = CostRate(
            service_type="script",
            model_name="gpt-4-turbo",
            input_token_cost=Decimal("0.01"),
            output_token_cost=Decimal("0.03"),
            request_cost=Decimal("0"),
        )

        assert compute_cost(rate, 2000, 1000, 1) == Decimal("0.05")
        assert compute_cost(None, 2000, 1000, 1) == Decimal("0")

    def test_select_rate_prefers_exact_then_longest_prefix(self):
        generic = CostRate(model_name="claude-3", effective_date=date(2024, 1, 1))
        haiku = CostRate(model_name="claude-3-haiku", effective_date=date(2024, 1, 1))

        assert _select_rate([generic, haiku], "claude-3-haiku-20240307") is haiku
        assert _select_rate([generic, haiku], "claude-3") is generic
        assert _select_rate([generic, haiku], "gpt-4") is None

    def test_select_rate_latest_effective_date(self):
        old = CostRate(model_name="dall-e-3", effective_date=date(2024, 1, 1))
        new = CostRate(model_name="dall-e-3", effective_date=date(2024, 6, 1))

        assert _select_rate([old, new], "dall-e-3") is new


class TestRecord:
    async def test_p0_records_cost_from_seeded_rates(self, usage_recorder, seeded, session_factory, user_id, project):
        """[P0] One UsageRecord with computed cost per invocation attempt."""
        record = await usage_recorder.record(
            UsageMetrics(
                user_id=user_id,
                project_id=project.id,
                service_type="script",
                model_used="claude-3-sonnet-20240229",
                input_tokens=1000,
                output_tokens=1000,
                duration_ms=5400,
            )
        )

        assert seeded == 8
        assert record.cost == Decimal("0.018")
        assert record.tokens_used == 2000
        async with session_factory() as db:
            stored = (await db.execute(select(UsageRecord))).scalar_one()
        assert stored.model_used == "claude-3-sonnet-20240229"
        assert stored.success is True

    async def test_failed_attempt_recorded(self, usage_recorder, seeded, user_id):
        record = await usage_recorder.record(
            UsageMetrics(
                user_id=user_id,
                service_type="characters",
                model_used="dall-e-3",
                success=False,
                error_message="safety system",
            )
        )

        assert record.success is False
        assert record.cost == Decimal("0.04")

    async def test_unknown_model_costs_nothing(self, usage_recorder, user_id):
        assert await usage_recorder.calculate_cost("video", "ffmpeg") == Decimal("0")

    async def test_p0_record_never_raises(self, user_id):
        """[P0] A broken database is logged, not raised."""
        recorder = UsageRecorder(Mock(side_effect=RuntimeError("database unavailable")))

        assert await recorder.record(UsageMetrics(user_id=user_id, service_type="research")) is None

    async def test_seed_is_idempotent(self, session_factory, seeded):
        async with session_factory() as db, db.begin():
            assert await seed_default_rates(db) == 0


class TestMonthlyReport:
    async def test_p1_aggregates_by_service(self, usage_recorder, seeded, user_id):
        """[P1] Totals, success rate and per-service breakdown for the month."""
        for metrics in (
            UsageMetrics(user_id=user_id, service_type="research", model_used="claude-3-haiku", input_tokens=1000),
            UsageMetrics(user_id=user_id, service_type="characters", model_used="dall-e-3"),
            UsageMetrics(user_id=user_id, service_type="characters", model_used="dall-e-3", success=False),
        ):
            await usage_recorder.record(metrics)

        report = await usage_recorder.monthly_usage_report(user_id)

        assert report.total_api_calls == 3
        assert report.total_tokens == 1000
        assert report.total_cost == Decimal("0.08025")
        assert report.success_rate == pytest.approx(2 / 3)
        assert report.by_service["characters"]["api_calls"] == 2

    async def test_other_months_excluded(self, usage_recorder, user_id):
        await usage_recorder.record(UsageMetrics(user_id=user_id, service_type="research"))

        report = await usage_recorder.monthly_usage_report(user_id, date(2001, 1, 1))

        assert report.total_api_calls == 0
        assert report.success_rate == 1.0


class TestUsageLimit:
    async def test_p1_hobby_plan_limit(self, usage_recorder, session_factory, user_id):
        """[P1] Hobby users get five stories a month, with a warning from the fourth."""
        tracker = ProgressTracker(session_factory)
        for number in range(4):
            await tracker.create_project(user_id, f"topic {number}")

        status = await usage_recorder.check_usage_limit(user_id)
        assert (status.stories_used, status.remaining, status.near_limit, status.exceeded) == (4, 1, True, False)

        await tracker.create_project(user_id, "topic 5")
        with pytest.raises(ServiceError) as exc_info:
            await usage_recorder.enforce_usage_limit(user_id)
        assert exc_info.value.code == ErrorCode.USAGE_LIMIT_EXCEEDED

    async def test_unknown_plan(self, usage_recorder, user_id):
        with pytest.raises(ServiceError) as exc_info:
            await usage_recorder.check_usage_limit(user_id, "enterprise-gold")

        assert exc_info.value.code == ErrorCode.SUBSCRIPTION_REQUIRED
