"""Shopify CLI app-creation job routes.

The client starts a job, then polls its status until it is completed or
failed. While the job waits for authentication the status view carries the
authUrl the user has to open.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from shopbuilder.api.deps import get_orchestrator
from shopbuilder.core.auth import AuthenticatedUser, require_auth
from shopbuilder.jobs.orchestrator import JobOrchestrator

router = APIRouter()


class CreateAppRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_name: str = Field(default="", alias="appName")


@router.post("/create-shopify-app")
async def create_shopify_app(
    request: CreateAppRequest,
    user: AuthenticatedUser = Depends(require_auth),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Start an app-creation job. Returns immediately with the job id."""
    job_id = await orchestrator.start_job(user.user_id, request.app_name)
    return {"success": True, "jobId": job_id, "message": "App creation started"}


@router.get("/app-creation-status/{job_id}")
async def app_creation_status(
    job_id: str,
    user: AuthenticatedUser = Depends(require_auth),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    record = await orchestrator.get_status(job_id, user.user_id)
    return record.to_status_view()


@router.post("/app-creation-status/{job_id}/setup-complete")
async def acknowledge_setup(
    job_id: str,
    user: AuthenticatedUser = Depends(require_auth),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Signal that the user finished authentication outside the app."""
    record = await orchestrator.acknowledge_setup(job_id, user.user_id)
    return record.to_status_view()
