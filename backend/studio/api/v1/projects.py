"""Project management endpoints."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from studio.api.v1.deps import get_generation_service
from studio.auth import CurrentUser
from studio.services.generation_service import GenerationService, ProjectNotFound

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

Generation = Annotated[GenerationService, Depends(get_generation_service)]


class DeleteProjectRequest(BaseModel):
    id: str = ""


class DeleteProjectResponse(BaseModel):
    success: bool


@router.post("/delete", response_model=DeleteProjectResponse)
async def delete_project(
    body: DeleteProjectRequest, user: CurrentUser, generation: Generation
) -> DeleteProjectResponse:
    """Delete one of the caller's projects together with its stored images."""
    project_id = body.id.strip()
    if not project_id:
        raise HTTPException(status_code=400, detail="Project id is required.")

    try:
        await generation.delete_project(user_id=user.id, project_id=project_id)
    except ProjectNotFound:
        raise HTTPException(status_code=404, detail="Project not found.")
    except Exception as e:
        logger.exception("project_delete_failed", project_id=project_id, error=str(e))
        raise HTTPException(status_code=500, detail="Unable to delete project.")

    return DeleteProjectResponse(success=True)
