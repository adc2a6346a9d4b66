"""FastAPI dependencies exposing the services built in the app lifespan."""

from fastapi import Request

from shopbuilder.jobs.orchestrator import JobOrchestrator
from shopbuilder.jobs.store import JobStore
from shopbuilder.services.generation_service import CodeGenerationPipeline
from shopbuilder.services.project_store import ProjectStore


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_pipeline(request: Request) -> CodeGenerationPipeline:
    return request.app.state.pipeline


def get_project_store(request: Request) -> ProjectStore:
    return request.app.state.project_store
