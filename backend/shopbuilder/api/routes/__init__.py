from fastapi import APIRouter

from shopbuilder.api.routes import app_setup, generation, health, projects

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(generation.router, tags=["generation"])
api_router.include_router(projects.router, prefix="/projects", tags=["projects"])
api_router.include_router(app_setup.router, tags=["app-setup"])
