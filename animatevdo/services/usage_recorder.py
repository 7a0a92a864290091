"""Usage and cost recording for external API calls.

Every external provider invocation attempt (successful or not) produces one
UsageRecord with token counts, duration and a computed cost. Cost comes from
the ``cost_rates`` table:

    cost = input_tokens / 1000 * input_rate
         + output_tokens / 1000 * output_rate
         + api_calls * request_rate

An unknown (service, model) pair costs zero rather than failing.

Recording is observability, so ``UsageRecorder.record`` never raises: a
database failure is logged as ``usage_record_failed`` and the stage that was
being observed carries on.

Also provides token estimation, provider usage parsing, a monthly usage
report and plan limit checks.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from animatevdo.clients.base import TokenUsage
from animatevdo.constants import DEFAULT_COST_RATES, PLAN_STORY_LIMITS, USAGE_WARNING_THRESHOLD
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import CostRate, Project, UsageRecord
from animatevdo.utils.logging import get_logger

log = get_logger(__name__)

_THOUSAND = Decimal(1000)


@dataclass
class UsageMetrics:
    """One provider invocation attempt, as reported by a Stage Runner."""

    user_id: UUID
    service_type: str
    project_id: UUID | None = None
    api_calls: int = 1
    input_tokens: int = 0
    output_tokens: int = 0
    model_used: str | None = None
    duration_ms: int | None = None
    success: bool = True
    error_message: str | None = None


@dataclass
class UsageReport:
    """Aggregated usage for one user over one calendar month."""

    user_id: UUID
    month: date
    total_api_calls: int = 0
    total_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    successful_calls: int = 0
    failed_calls: int = 0
    by_service: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        attempts = self.successful_calls + self.failed_calls
        return self.successful_calls / attempts if attempts else 1.0


@dataclass
class UsageLimitStatus:
    plan: str
    stories_used: int
    stories_limit: int

    @property
    def remaining(self) -> int:
        return max(self.stories_limit - self.stories_used, 0)

    @property
    def exceeded(self) -> bool:
        return self.stories_used >= self.stories_limit

    @property
    def near_limit(self) -> bool:
        return self.stories_used >= self.stories_limit * USAGE_WARNING_THRESHOLD


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / 4)


def parse_openai_usage(payload: dict[str, Any]) -> TokenUsage:
    usage = payload.get("usage") or {}
    return TokenUsage(
        input_tokens=int(usage.get("prompt_tokens", 0)),
        output_tokens=int(usage.get("completion_tokens", 0)),
    )


def parse_anthropic_usage(payload: dict[str, Any]) -> TokenUsage:
    usage = payload.get("usage") or {}
    return TokenUsage(
        input_tokens=int(usage.get("input_tokens", 0)),
        output_tokens=int(usage.get("output_tokens", 0)),
    )


def compute_cost(
    rate: CostRate | None,
    input_tokens: int,
    output_tokens: int,
    request_count: int,
) -> Decimal:
    """Apply a rate row to usage counts (zero when no rate applies)."""
    if rate is None:
        return Decimal("0")
    return (
        Decimal(input_tokens) / _THOUSAND * Decimal(rate.input_token_cost)
        + Decimal(output_tokens) / _THOUSAND * Decimal(rate.output_token_cost)
        + Decimal(request_count) * Decimal(rate.request_cost)
    )


def _select_rate(rates: list[CostRate], model: str) -> CostRate | None:
    """Pick the rate for ``model``: exact name first, then the longest prefix.

    Provider model ids carry date suffixes ("claude-3-haiku-20240307") that
    the rate table omits. Ties go to the latest effective_date.
    """
    candidates = [rate for rate in rates if model == rate.model_name or model.startswith(rate.model_name)]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda rate: (rate.model_name == model, len(rate.model_name), rate.effective_date),
    )


def _month_bounds(month: date) -> tuple[datetime, datetime]:
    start = datetime(month.year, month.month, 1, tzinfo=timezone.utc)
    if month.month == 12:
        end = datetime(month.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(month.year, month.month + 1, 1, tzinfo=timezone.utc)
    return start, end


async def seed_default_rates(db: AsyncSession) -> int:
    """Insert the default rate table rows that are not present yet.

    Returns:
        Number of rows inserted.
    """
    result = await db.execute(select(CostRate.service_type, CostRate.model_name))
    existing = {(row.service_type, row.model_name) for row in result}

    inserted = 0
    for (service_type, model_name), (input_cost, output_cost, request_cost) in DEFAULT_COST_RATES.items():
        if (service_type, model_name) in existing:
            continue
        db.add(
            CostRate(
                service_type=service_type,
                model_name=model_name,
                input_token_cost=input_cost,
                output_token_cost=output_cost,
                request_cost=request_cost,
            )
        )
        inserted += 1
    return inserted


class UsageRecorder:
    """Persists UsageRecords and answers usage questions for one database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _find_rate(self, db: AsyncSession, service_type: str, model: str | None) -> CostRate | None:
        if not model:
            return None
        result = await db.execute(select(CostRate).where(CostRate.service_type == service_type))
        return _select_rate(list(result.scalars()), model)

    async def calculate_cost(
        self,
        service_type: str,
        model: str | None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        request_count: int = 1,
    ) -> Decimal:
        async with self.session_factory() as db:
            rate = await self._find_rate(db, service_type, model)
        return compute_cost(rate, input_tokens, output_tokens, request_count)

    async def record(self, metrics: UsageMetrics) -> UsageRecord | None:
        """Persist one usage record; log and return None on any failure.

        Example:
            >>> await recorder.record(UsageMetrics(
            ...     user_id=project.user_id,
            ...     project_id=project.id,
            ...     service_type="script",
            ...     model_used="claude-3-sonnet-20240229",
            ...     input_tokens=1200,
            ...     output_tokens=900,
            ...     duration_ms=5400,
            ... ))
        """
        try:
            async with self.session_factory() as db, db.begin():
                rate = await self._find_rate(db, metrics.service_type, metrics.model_used)
                cost = compute_cost(rate, metrics.input_tokens, metrics.output_tokens, metrics.api_calls)
                record = UsageRecord(
                    user_id=metrics.user_id,
                    project_id=metrics.project_id,
                    service_type=metrics.service_type,
                    api_calls=metrics.api_calls,
                    input_tokens=metrics.input_tokens,
                    output_tokens=metrics.output_tokens,
                    tokens_used=metrics.input_tokens + metrics.output_tokens,
                    model_used=metrics.model_used,
                    duration_ms=metrics.duration_ms,
                    cost=cost,
                    success=metrics.success,
                    error_message=metrics.error_message,
                )
                db.add(record)
        except Exception as e:
            log.error(
                "usage_record_failed",
                service_type=metrics.service_type,
                project_id=metrics.project_id,
                error=str(e),
            )
            return None

        log.debug(
            "usage_recorded",
            service_type=metrics.service_type,
            model=metrics.model_used,
            cost=cost,
            success=metrics.success,
        )
        return record

    async def monthly_usage_report(self, user_id: UUID, month: date | None = None) -> UsageReport:
        """Aggregate a user's usage for the calendar month containing ``month``."""
        month = (month or datetime.now(timezone.utc).date()).replace(day=1)
        start, end = _month_bounds(month)

        async with self.session_factory() as db:
            result = await db.execute(
                select(UsageRecord).where(
                    UsageRecord.user_id == user_id,
                    UsageRecord.created_at >= start,
                    UsageRecord.created_at < end,
                )
            )
            records = list(result.scalars())

        report = UsageReport(user_id=user_id, month=month)
        by_service: dict[str, dict[str, Any]] = defaultdict(
            lambda: {"api_calls": 0, "tokens": 0, "cost": Decimal("0")}
        )
        for record in records:
            cost = Decimal(record.cost or 0)
            report.total_api_calls += record.api_calls
            report.total_tokens += record.tokens_used
            report.total_cost += cost
            if record.success:
                report.successful_calls += 1
            else:
                report.failed_calls += 1
            service = by_service[record.service_type]
            service["api_calls"] += record.api_calls
            service["tokens"] += record.tokens_used
            service["cost"] += cost
        report.by_service = dict(by_service)
        return report

    async def check_usage_limit(self, user_id: UUID, plan: str = "hobby") -> UsageLimitStatus:
        """Count this month's projects for ``user_id`` against the plan limit.

        Raises:
            ServiceError: SUBSCRIPTION_REQUIRED for an unknown plan.
        """
        limit = PLAN_STORY_LIMITS.get(plan)
        if limit is None:
            raise ServiceError(
                ErrorCode.SUBSCRIPTION_REQUIRED,
                f"Unknown subscription plan: {plan}",
                user_message="An active subscription is required to create stories.",
                retryable=False,
            )

        start, end = _month_bounds(datetime.now(timezone.utc).date())
        async with self.session_factory() as db:
            stories_used = await db.scalar(
                select(func.count(Project.id)).where(
                    Project.user_id == user_id,
                    Project.created_at >= start,
                    Project.created_at < end,
                )
            )

        status = UsageLimitStatus(plan=plan, stories_used=stories_used or 0, stories_limit=limit)
        if status.near_limit and not status.exceeded:
            log.warning(
                "usage_limit_approaching",
                user_id=user_id,
                plan=plan,
                stories_used=status.stories_used,
                stories_limit=limit,
            )
        return status

    async def enforce_usage_limit(self, user_id: UUID, plan: str = "hobby") -> UsageLimitStatus:
        """Like check_usage_limit but raises USAGE_LIMIT_EXCEEDED when over."""
        status = await self.check_usage_limit(user_id, plan)
        if status.exceeded:
            raise ServiceError(
                ErrorCode.USAGE_LIMIT_EXCEEDED,
                f"User reached {status.stories_limit} stories this month on the {plan} plan",
                user_message="You've reached your monthly story limit. Upgrade your plan to create more.",
                retryable=False,
                suggested_action="Upgrade your subscription",
                technical_details={"plan": plan, "stories_used": status.stories_used},
            )
        return status
