"""Stage Runner skeleton shared by the five pipeline stages.

A Stage Runner turns one ``run(project_id, inputs)`` call into exactly one
appended StageResult:

1. Load the project (INVALID_PROJECT_DATA if it does not exist).
2. Resolve prior-stage outputs: from ``inputs.dependencies`` if supplied,
   otherwise the latest completed StageResult of each required stage.
   Missing output is MISSING_DEPENDENCIES, malformed output DATA_CORRUPTION.
   Both are non-retryable.
3. ``execute()`` (stage-specific) builds requests and calls its external
   capability through ``invoke()``, which wraps each call in the retry
   executor and records one UsageRecord per attempt.
4. Success, in one transaction: completed StageResult, progress flag set,
   project stage pointer advanced to the next stage.
5. Failure, in one transaction: failed StageResult and, for retryable
   errors, a RecoveryQueueEntry due after the recovery delay. The progress
   flag and stage pointer are left untouched. The error is then re-raised.

Fan-out stages use ``fan_out()``: items run concurrently (bounded by a
semaphore), each with its own retry executor, and a failed item becomes a
placeholder carrying an "ERROR" marker instead of failing the batch.

Architecture Pattern: "Short Transaction + Long Processing"
    No database transaction is held open while external providers are called.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar
from urllib.parse import quote
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from animatevdo.config import Settings
from animatevdo.constants import ERROR_MARKER, STAGE_DEPENDENCIES, STAGE_SERVICE_NAMES
from animatevdo.exceptions import ErrorCode, ServiceError
from animatevdo.models import Project, Stage, StageResult, StageStatus, utcnow
from animatevdo.schemas.stage_content import STAGE_CONTENT_MODELS
from animatevdo.services.error_classifier import classify
from animatevdo.services.error_reporter import ErrorReporter
from animatevdo.services.progress_tracker import ProgressTracker
from animatevdo.services.recovery_queue import RecoveryQueue
from animatevdo.services.retry import RetryOptions, Sleep, run_with_retry
from animatevdo.services.usage_recorder import UsageMetrics, UsageRecorder
from animatevdo.utils.logging import StructuredLogger, get_logger

log = get_logger(__name__)

T = TypeVar("T")
Item = TypeVar("Item")


@dataclass
class StageInputs:
    """Caller-supplied overrides for a stage invocation.

    Attributes:
        dependencies: Prior-stage content keyed by stage name; used instead of
            the persisted StageResult for that stage.
        options: Stage-specific options (e.g. ``characters``, ``voice_id``).
    """

    dependencies: dict[str, dict[str, Any]] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class StageContext:
    """Everything ``execute()`` needs for one invocation."""

    project: Project
    dependencies: dict[str, BaseModel]
    options: dict[str, Any]
    log: StructuredLogger


@dataclass
class FanOutResult:
    outputs: list[Any]
    errors: list[ServiceError]

    @property
    def all_failed(self) -> bool:
        return bool(self.outputs) and len(self.errors) == len(self.outputs)


def error_marker_url(kind: str, label: str, reason: str, size: str = "512x512") -> str:
    """Placeholder URL for a failed fan-out item.

    Example:
        >>> error_marker_url("image", "Luna", "Service configuration error")
        'https://placehold.co/512x512.png?text=ERROR-Luna&reason=Service%20configuration%20error'
    """
    text = quote(f"{ERROR_MARKER}-{label}")
    reason = quote(reason[:30])
    if kind == "audio":
        return f"{ERROR_MARKER}-{quote(label)}?reason={reason}"
    return f"https://placehold.co/{size}.png?text={text}&reason={reason}"


class StageRunner:
    """Base class for a pipeline stage. Subclasses set ``stage`` and implement ``execute``."""

    stage: ClassVar[Stage]

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        progress: ProgressTracker,
        recovery_queue: RecoveryQueue,
        usage_recorder: UsageRecorder,
        error_reporter: ErrorReporter,
        retry_options: RetryOptions | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.progress = progress
        self.recovery_queue = recovery_queue
        self.usage_recorder = usage_recorder
        self.error_reporter = error_reporter
        self.retry_options = retry_options or RetryOptions.from_settings(settings)
        self.sleep = sleep

    @property
    def service_name(self) -> str:
        return STAGE_SERVICE_NAMES[self.stage.value]

    @property
    def required_stages(self) -> tuple[Stage, ...]:
        return tuple(Stage(name) for name in STAGE_DEPENDENCIES[self.stage.value])

    async def execute(self, ctx: StageContext) -> BaseModel:
        """Stage-specific work; returns the content model to persist."""
        raise NotImplementedError

    async def run(
        self,
        project_id: UUID,
        inputs: StageInputs | None = None,
        *,
        enqueue_recovery: bool = True,
    ) -> StageResult:
        """Run this stage for ``project_id`` and persist the outcome.

        Args:
            project_id: Project to run the stage for.
            inputs: Optional dependency overrides and stage options.
            enqueue_recovery: Queue a recovery entry on retryable failure.
                The recovery worker passes False since it tracks its own entry.

        Returns:
            The completed StageResult.

        Raises:
            ServiceError: After persisting a failed StageResult.
        """
        inputs = inputs or StageInputs()
        project = await self.progress.get_project(project_id)
        stage_log = log.bind(project_id=str(project.id), stage=self.stage.value)
        started = time.monotonic()
        stage_log.info("stage_started", topic=project.topic)

        try:
            dependencies = await self._resolve_dependencies(project.id, inputs)
            content = await self.execute(StageContext(project, dependencies, inputs.options, stage_log))
        except Exception as e:
            error = classify(e, self.service_name)
            await self._persist_failure(project, error, enqueue_recovery)
            stage_log.error(
                "stage_failed",
                error_code=error.code.value,
                error=error.message,
                retryable=error.retryable,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            if error is e:
                raise
            raise error from e

        result = await self._persist_success(project, content.model_dump(mode="json"))
        stage_log.info(
            "stage_completed",
            next_stage=self.stage.next_stage_name,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return result

    async def _resolve_dependencies(self, project_id: UUID, inputs: StageInputs) -> dict[str, BaseModel]:
        resolved: dict[str, BaseModel] = {}
        missing: list[str] = []

        for stage in self.required_stages:
            content = inputs.dependencies.get(stage.value)
            if content is None:
                result = await self.progress.latest_result(project_id, stage)
                content = result.content if result is not None else None
            if content is None:
                missing.append(stage.value)
                continue

            try:
                resolved[stage.value] = STAGE_CONTENT_MODELS[stage.value].model_validate(content)
            except ValidationError as e:
                raise ServiceError(
                    ErrorCode.DATA_CORRUPTION,
                    f"Stored {stage.value} output is invalid: {e.error_count()} validation errors",
                    user_message=f"The {stage.value} results for this project look damaged. Please re-run that stage.",
                    retryable=False,
                    technical_details={
                        "stage": stage.value,
                        "errors": e.errors(include_url=False, include_context=False, include_input=False)[:5],
                    },
                ) from e

        if missing:
            raise ServiceError(
                ErrorCode.MISSING_DEPENDENCIES,
                f"{self.service_name} requires completed {', '.join(missing)} output",
                user_message=f"Please complete the {missing[0]} stage first.",
                retryable=False,
                technical_details={"missing_stages": missing},
            )
        return resolved

    async def invoke(
        self,
        ctx: StageContext,
        operation: Callable[[], Awaitable[T]],
        *,
        model_hint: str | None = None,
        label: str | None = None,
    ) -> T:
        """Call an external capability with retry and per-attempt usage recording."""

        async def attempt() -> T:
            started = time.monotonic()
            try:
                result = await operation()
            except Exception as e:
                await self._record_usage(ctx, started, model_hint, success=False, error_message=str(e)[:500])
                raise
            await self._record_usage(ctx, started, getattr(result, "model", None) or model_hint, result=result)
            return result

        def on_retry(attempt_number: int, delay: float) -> None:
            ctx.log.warning("stage_call_retry", item=label, attempt=attempt_number, delay_seconds=delay)

        return await run_with_retry(
            attempt,
            self.retry_options,
            on_retry,
            service_name=self.service_name,
            sleep=self.sleep,
        )

    async def _record_usage(
        self,
        ctx: StageContext,
        started: float,
        model: str | None,
        *,
        result: Any = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> None:
        usage = getattr(result, "usage", None)
        await self.usage_recorder.record(
            UsageMetrics(
                user_id=ctx.project.user_id,
                project_id=ctx.project.id,
                service_type=self.stage.value,
                input_tokens=usage.input_tokens if usage else 0,
                output_tokens=usage.output_tokens if usage else 0,
                model_used=model,
                duration_ms=int((time.monotonic() - started) * 1000),
                success=success,
                error_message=error_message,
            )
        )

    async def upload(self, ctx: StageContext, storage_call: Callable[[], Awaitable[str]], path: str) -> str:
        """Upload a generated artifact, reporting failures as STORAGE_UPLOAD_FAILED."""
        try:
            return await storage_call()
        except Exception as e:
            status = getattr(e, "status_code", None)
            if status == 413:
                raise ServiceError(
                    ErrorCode.STORAGE_QUOTA_EXCEEDED,
                    f"Storage quota exceeded uploading {path}",
                    user_message="Storage is full. Please delete old projects or upgrade your plan.",
                    retryable=False,
                ) from e
            ctx.log.warning("storage_upload_failed", path=path, error=str(e))
            raise ServiceError(
                ErrorCode.STORAGE_UPLOAD_FAILED,
                f"Failed to upload {path}: {e}",
                user_message="Failed to save a generated file. Please try again.",
                retryable=True,
            ) from e

    async def fan_out(
        self,
        ctx: StageContext,
        items: Sequence[Item],
        worker: Callable[[Item], Awaitable[Any]],
        placeholder: Callable[[Item, ServiceError], Any],
        limit: int | asyncio.Semaphore,
    ) -> FanOutResult:
        """Run ``worker`` for every item concurrently, keeping input order.

        A ServiceError from one item is replaced by ``placeholder(item, error)``;
        siblings are neither cancelled nor affected. ``limit`` is either the
        maximum number of concurrent workers or a Semaphore shared with other
        fan-outs calling the same provider.
        """
        if isinstance(limit, asyncio.Semaphore):
            semaphore = limit
        else:
            semaphore = asyncio.Semaphore(max(limit, 1))

        async def run_one(item: Item) -> tuple[Any, ServiceError | None]:
            async with semaphore:
                try:
                    return await worker(item), None
                except ServiceError as error:
                    ctx.log.warning("fan_out_item_failed", error_code=error.code.value, error=error.message)
                    return placeholder(item, error), error

        results = await asyncio.gather(*(run_one(item) for item in items))
        return FanOutResult(
            outputs=[output for output, _ in results],
            errors=[error for _, error in results if error is not None],
        )

    async def _persist_success(self, project: Project, content: dict[str, Any]) -> StageResult:
        async with self.session_factory() as db, db.begin():
            result = StageResult(
                project_id=project.id,
                stage=self.stage,
                status=StageStatus.COMPLETED,
                content=content,
                completed_at=utcnow(),
            )
            db.add(result)
            await self.progress.mark_complete(project.id, self.stage, db)
            await self.progress.advance_stage(project.id, self.stage.next_stage_name, db)
        return result

    async def _persist_failure(self, project: Project, error: ServiceError, enqueue_recovery: bool) -> StageResult:
        async with self.session_factory() as db, db.begin():
            result = StageResult(
                project_id=project.id,
                stage=self.stage,
                status=StageStatus.FAILED,
                error_message=error.message,
                error_code=error.code.value,
            )
            db.add(result)
            if error.retryable and enqueue_recovery:
                await self.recovery_queue.enqueue(project.id, self.stage, error, db)

        await self.error_reporter.report(
            error,
            service=self.service_name,
            project_id=project.id,
            user_id=project.user_id,
        )
        return result
