"""Text-to-speech generation router."""

from typing import Optional

from fastapi import APIRouter, Depends

from routers.auth_scope import get_optional_identity
from routers.dependencies import get_generation_orchestrator
from services.generation import GenerationOrchestrator, GenerationRequest, Identity

router = APIRouter()


@router.post("")
async def generate_speech(
    request: GenerationRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """
    Generate speech for the caller and bill it on completion.

    Refusals (auth, quota, credits, provider) are raised as GenerationError
    and rendered by the application-level handler.
    """
    result = await orchestrator.generate(identity, request)
    return result.to_payload()
