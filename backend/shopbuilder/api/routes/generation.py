"""Prompt-to-preview code generation route."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from shopbuilder.api.deps import get_pipeline
from shopbuilder.core.auth import AuthenticatedUser, require_auth
from shopbuilder.services.generation_service import CodeGenerationPipeline

router = APIRouter()


class GenerateCodeRequest(BaseModel):
    # Emptiness is rejected by the pipeline with a ValidationError (400)
    prompt: str = ""


@router.post("/generate-code")
async def generate_code(
    request: GenerateCodeRequest,
    user: AuthenticatedUser = Depends(require_auth),
    pipeline: CodeGenerationPipeline = Depends(get_pipeline),
):
    """Generate an app from a prompt and deploy it to a sandbox preview.

    Deployment failures still return 200 with the generated code,
    previewUrl null and an error message.
    """
    result = await pipeline.generate(user.user_id, request.prompt)
    return result.to_response()
