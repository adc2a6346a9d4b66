"""Generated project listing and retrieval routes."""

from fastapi import APIRouter, Depends

from shopbuilder.api.deps import get_pipeline, get_project_store
from shopbuilder.core.auth import AuthenticatedUser, require_auth
from shopbuilder.services.generation_service import CodeGenerationPipeline
from shopbuilder.services.project_store import ProjectStore

router = APIRouter()


@router.get("")
async def list_projects(
    user: AuthenticatedUser = Depends(require_auth),
    project_store: ProjectStore = Depends(get_project_store),
):
    """The caller's projects, newest first."""
    projects = await project_store.list_projects(user.user_id)
    return {"success": True, "projects": [p.to_metadata() for p in projects]}


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    user: AuthenticatedUser = Depends(require_auth),
    pipeline: CodeGenerationPipeline = Depends(get_pipeline),
):
    """Project metadata and files, with a live preview URL when one can be provided."""
    record = await pipeline.get_project_with_preview(user.user_id, project_id)
    return {"success": True, "project": {**record.to_metadata(), "files": record.files}}
