"""Pydantic schemas for the projects HTTP API.

Schema Naming Convention:
    - ProjectCreate: POST /projects body
    - RunStageRequest: POST /projects/{id}/stages/{stage} body
    - *Response: serialized from ORM objects (``from_attributes=True``)
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from animatevdo.models import Stage, StageStatus


class ProjectCreate(BaseModel):
    """Create a project for a user.

    Authentication happens upstream, so the owning user id is part of the
    request. ``plan`` selects the monthly story limit checked before creation.
    """

    user_id: UUID = Field(..., description="Owning user")
    topic: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="What the story is about",
        examples=["space exploration"],
    )
    plan: str = Field(default="hobby", description="Subscription plan: hobby, creator or studio")


class ProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    research: bool
    script: bool
    characters: bool
    audio: bool
    video: bool


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    topic: str
    stage: str = Field(..., description="Next stage to run, or 'complete'")
    created_at: datetime
    updated_at: datetime
    progress: ProgressResponse | None = None


class RunStageRequest(BaseModel):
    """Optional overrides for a stage run.

    ``dependencies`` maps a prior stage name to its content and is used
    instead of the persisted result; ``options`` are stage specific
    (``characters``, ``voice_id``, ``render_settings``...).
    """

    dependencies: dict[str, dict[str, Any]] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)


class StageResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: UUID
    stage: Stage
    status: StageStatus
    content: dict[str, Any] | None = None
    error_message: str | None = None
    error_code: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
