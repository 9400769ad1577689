"""Reasoning-backend passthrough and key verification."""
import logging

from fastapi import APIRouter, Depends

from grantscan.api.deps import get_orchestrator
from grantscan.api.schemas import GenerateRequest, VerifyRequest
from grantscan.config import SettingsProvider, get_settings_provider
from grantscan.services.llm import LLMRequest, LLMStage, ReasoningOrchestrator
from grantscan.services.resilience import AuthError, ModelNotFound, RetryPolicy

logger = logging.getLogger(__name__)

router = APIRouter()

VERIFY_PROMPT = "ping"


@router.post("/generate")
async def generate(body: GenerateRequest, orchestrator: ReasoningOrchestrator = Depends(get_orchestrator)):
    response, _ = await orchestrator.run(
        LLMRequest(stage=LLMStage.passthrough, contents=body.contents, model=body.model, config=body.config)
    )
    return {"text": response.text, "candidates": response.candidates}


@router.post("/verify")
async def verify(
    body: VerifyRequest,
    settings: SettingsProvider = Depends(get_settings_provider),
    orchestrator: ReasoningOrchestrator = Depends(get_orchestrator),
):
    """Single attempt against the configured key, or against ``apiKey`` without storing it."""
    if body.api_key:
        candidate = SettingsProvider(settings.current().model_copy(update={"gemini_api_key": body.api_key}))
        orchestrator = ReasoningOrchestrator(candidate)
    model = body.model or settings.current().gemini_model
    try:
        await orchestrator.run(
            LLMRequest(
                stage=LLMStage.key_verification,
                contents=VERIFY_PROMPT,
                model=model,
                config={"temperature": 0, "max_output_tokens": 8},
            ),
            policy=RetryPolicy(max_attempts=1),
        )
    except (AuthError, ModelNotFound) as exc:
        logger.info("Reasoning key verification failed: %s", exc.kind.value)
        return {"valid": False, "model": model, "error": exc.kind.value, "message": exc.user_message()}
    return {"valid": True, "model": model}
