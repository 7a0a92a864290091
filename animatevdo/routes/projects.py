"""Project and stage routes.

- POST /projects                          create a project (plan limit enforced)
- GET  /projects/{project_id}             project plus progress flags
- POST /projects/{project_id}/stages/{stage}  run one stage now
- GET  /projects/{project_id}/stages/{stage}  latest completed result

Stage failures surface as ServiceError and are rendered by the exception
handler registered in ``animatevdo.main``.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from animatevdo.models import ProgressRecord, Project
from animatevdo.schemas.project import (
    ProgressResponse,
    ProjectCreate,
    ProjectResponse,
    RunStageRequest,
    StageResultResponse,
)
from animatevdo.services.pipeline_orchestrator import PipelineOrchestrator, parse_stage
from animatevdo.services.stage_runner import StageInputs

log = structlog.get_logger()
router = APIRouter(prefix="/projects", tags=["projects"])


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    """FastAPI dependency returning the orchestrator built at startup."""
    return request.app.state.orchestrator


def _project_response(project: Project, progress: ProgressRecord) -> ProjectResponse:
    # Built explicitly: lazy-loading project.progress is not possible on an async session
    return ProjectResponse(
        id=project.id,
        user_id=project.user_id,
        topic=project.topic,
        stage=project.stage,
        created_at=project.created_at,
        updated_at=project.updated_at,
        progress=ProgressResponse.model_validate(progress),
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ProjectResponse)
async def create_project(
    body: ProjectCreate,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> ProjectResponse:
    project = await orchestrator.create_project(body.user_id, body.topic, body.plan)
    progress = await orchestrator.progress.get(project.id)
    log.info("project_created_via_api", project_id=str(project.id), plan=body.plan)
    return _project_response(project, progress)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: UUID,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> ProjectResponse:
    project = await orchestrator.progress.get_project(project_id)
    progress = await orchestrator.progress.get(project_id)
    return _project_response(project, progress)


@router.post("/{project_id}/stages/{stage}", response_model=StageResultResponse)
async def run_stage(
    project_id: UUID,
    stage: str,
    body: RunStageRequest | None = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> StageResultResponse:
    """Run ``stage`` synchronously and return the persisted result.

    Returns:
        200 OK: Completed StageResult
        404 / 409 / 429 / 502 / 503: Classified stage failure
    """
    body = body or RunStageRequest()
    result = await orchestrator.run_stage(
        stage,
        project_id,
        StageInputs(dependencies=body.dependencies, options=body.options),
    )
    return StageResultResponse.model_validate(result)


@router.get("/{project_id}/stages/{stage}", response_model=StageResultResponse)
async def get_stage_result(
    project_id: UUID,
    stage: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> StageResultResponse:
    parsed = parse_stage(stage)
    await orchestrator.progress.get_project(project_id)
    result = await orchestrator.progress.latest_result(project_id, parsed)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No completed {parsed.value} result for this project",
        )
    return StageResultResponse.model_validate(result)
