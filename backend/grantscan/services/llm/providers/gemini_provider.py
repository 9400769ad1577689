from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Dict, List, Optional

import pydantic
from google import genai
from google.genai import types

from grantscan.config import SettingsProvider
from grantscan.services.llm.types import LLMResponse
from grantscan.services.resilience import (
    ContentRejected,
    ErrorKind,
    InvalidCredential,
    PipelineError,
    ValidationError,
    classify_error,
    classify_text,
    to_pipeline_error,
)

logger = logging.getLogger(__name__)

# Kept when the backend rejects a config field and the call is repeated.
MINIMAL_CONFIG_KEYS = ("response_mime_type", "temperature")
CONFIG_REJECTION_MARKERS = ("unknown name", "invalid json payload", "cannot find field")
SAFETY_MARKERS = ("SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", str(key)).lower()


def sanitize_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop keys the SDK config model does not know; accepts camelCase keys."""
    known = set(types.GenerateContentConfig.model_fields)
    cleaned: Dict[str, Any] = {}
    dropped: List[str] = []
    for key, value in (config or {}).items():
        name = _snake(key)
        if name in known:
            cleaned[name] = value
        else:
            dropped.append(str(key))
    if dropped:
        logger.info("Dropping unsupported reasoning config keys: %s", ", ".join(sorted(dropped)))
    return cleaned


def minimal_config(config: Dict[str, Any]) -> Dict[str, Any]:
    return {key: config[key] for key in MINIMAL_CONFIG_KEYS if key in config}


def is_config_rejection(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in CONFIG_REJECTION_MARKERS)


def classify_backend_error(exc: BaseException) -> ErrorKind:
    """SDK errors carry an HTTP-ish ``code``; fold it into the text before matching."""
    if isinstance(exc, PipelineError) or isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return classify_error(exc)
    code = getattr(exc, "code", None)
    return classify_text(f"{code or ''} {exc.__class__.__name__}: {exc}")


def _dump(item: Any) -> Dict[str, Any]:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json", exclude_none=True)
    if isinstance(item, dict):
        return dict(item)
    return {"value": str(item)}


def _finish_reason(candidate: Any) -> str:
    reason = getattr(candidate, "finish_reason", None)
    return str(getattr(reason, "value", reason) or "")


class GeminiProvider:
    name = "gemini"

    def __init__(
        self,
        settings: SettingsProvider,
        client_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or (lambda api_key: genai.Client(api_key=api_key))
        self._clients: Dict[str, Any] = {}

    def _client(self) -> Any:
        # Key is read per call so a config reload takes effect on the next request.
        api_key = str(self._settings.current().gemini_api_key or "").strip()
        if not api_key:
            raise InvalidCredential("GEMINI_API_KEY not configured", source=self.name)
        if api_key not in self._clients:
            self._clients = {api_key: self._client_factory(api_key)}
        return self._clients[api_key]

    async def _call(self, client: Any, model: str, contents: Any, config: Dict[str, Any], timeout: float) -> Any:
        cfg = types.GenerateContentConfig(**config) if config else None
        return await asyncio.wait_for(
            client.aio.models.generate_content(model=model, contents=contents, config=cfg),
            timeout=timeout,
        )

    async def generate(
        self,
        *,
        model: str,
        contents: Any,
        config: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        client = self._client()
        timeout = float(timeout_seconds or self._settings.current().reasoning_timeout_seconds)
        cleaned = sanitize_config(config)
        try:
            try:
                response = await self._call(client, model, contents, cleaned, timeout)
            except Exception as exc:
                fallback = minimal_config(cleaned)
                if not is_config_rejection(exc) or fallback == cleaned:
                    raise
                logger.warning("Reasoning backend rejected config, retrying with %s", sorted(fallback))
                response = await self._call(client, model, contents, fallback, timeout)
        except PipelineError:
            raise
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid reasoning config: {exc}", source=self.name) from exc
        except Exception as exc:
            raise to_pipeline_error(exc, classify_backend_error, source=self.name) from exc

        return self._to_response(response, model)

    def _to_response(self, response: Any, model: str) -> LLMResponse:
        candidates = list(getattr(response, "candidates", None) or [])
        text = str(getattr(response, "text", None) or "").strip()
        if not text:
            reasons = [_finish_reason(candidate) for candidate in candidates]
            feedback = getattr(response, "prompt_feedback", None)
            block_reason = str(getattr(feedback, "block_reason", None) or "")
            if block_reason or any(marker in reason for reason in reasons for marker in SAFETY_MARKERS):
                raise ContentRejected(
                    f"Response blocked ({block_reason or ', '.join(reasons)})",
                    source=self.name,
                )
        return LLMResponse(
            text=text,
            candidates=[_dump(candidate) for candidate in candidates],
            provider=self.name,
            model=model,
        )
