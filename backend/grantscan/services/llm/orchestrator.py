from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from grantscan.config import SettingsProvider
from grantscan.services.llm.providers.gemini_provider import GeminiProvider, classify_backend_error
from grantscan.services.llm.types import LLMRequest, LLMResponse, ModelAttemptTrace, now_iso
from grantscan.services.resilience import (
    PipelineError,
    RetryPolicy,
    is_retryable,
    to_pipeline_error,
    truncate_detail,
    with_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReasoningOrchestrator:
    """Runs one reasoning request under the shared retry policy, keeping attempt traces.

    ``parse`` runs inside the retried operation, so a malformed reply
    (``UpstreamError``) is retried like a transport failure.
    """

    def __init__(self, settings: SettingsProvider, provider: Optional[Any] = None) -> None:
        self._settings = settings
        self._provider = provider or GeminiProvider(settings)

    @property
    def provider_name(self) -> str:
        return str(getattr(self._provider, "name", "reasoning"))

    async def run(
        self,
        request: LLMRequest,
        parse: Optional[Callable[[LLMResponse], T]] = None,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> Tuple[LLMResponse, Optional[T]]:
        settings = self._settings.current()
        model = request.model or settings.gemini_model
        policy = policy or RetryPolicy.from_settings(settings)
        attempts: List[ModelAttemptTrace] = []

        async def _attempt() -> Tuple[LLMResponse, Optional[T]]:
            started = now_iso()
            t0 = time.perf_counter()
            try:
                response = await self._provider.generate(
                    model=model,
                    contents=request.contents,
                    config=request.config,
                    timeout_seconds=request.timeout_seconds,
                )
                parsed = parse(response) if parse is not None else None
            except Exception as exc:
                error = to_pipeline_error(exc, classify_backend_error, source=self.provider_name)
                attempts.append(
                    ModelAttemptTrace(
                        stage=request.stage.value,
                        provider=self.provider_name,
                        model=model,
                        latency_ms=int((time.perf_counter() - t0) * 1000),
                        status="retryable_error" if is_retryable(error.kind) else "terminal_error",
                        retry_count=len(attempts),
                        error_class=error.kind.value,
                        error_message=truncate_detail(str(exc), 500),
                        started_at=started,
                        ended_at=now_iso(),
                    )
                )
                if error is exc:
                    raise
                raise error from exc
            attempts.append(
                ModelAttemptTrace(
                    stage=request.stage.value,
                    provider=self.provider_name,
                    model=model,
                    latency_ms=int((time.perf_counter() - t0) * 1000),
                    status="success",
                    retry_count=len(attempts),
                    started_at=started,
                    ended_at=now_iso(),
                )
            )
            response.attempts = attempts
            return response, parsed

        try:
            return await with_retry(
                _attempt,
                policy=policy,
                classifier=classify_backend_error,
                label=f"{request.stage.value}:{model}",
                source=self.provider_name,
            )
        except PipelineError as exc:
            logger.warning(
                "Reasoning stage %s failed after %d attempt(s): %s",
                request.stage.value,
                len(attempts),
                exc.kind.value,
            )
            raise
