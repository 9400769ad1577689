from grantscan.services.llm.orchestrator import ReasoningOrchestrator
from grantscan.services.llm.types import LLMRequest, LLMResponse, LLMStage, ModelAttemptTrace

__all__ = ["ReasoningOrchestrator", "LLMRequest", "LLMResponse", "LLMStage", "ModelAttemptTrace"]
