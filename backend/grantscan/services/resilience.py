"""Error taxonomy, upstream error classification and the shared retry policy."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, FrozenSet, Optional, Tuple, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from grantscan.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    auth = "auth"
    validation = "validation"
    quota_exceeded = "quota_exceeded"
    content_rejected = "content_rejected"
    model_not_found = "model_not_found"
    upstream = "upstream"


class PipelineError(RuntimeError):
    kind: ErrorKind = ErrorKind.upstream

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source

    def user_message(self) -> str:
        return user_message(self.kind, str(self))


class AuthError(PipelineError):
    kind = ErrorKind.auth


class InvalidCredential(AuthError):
    """The reasoning backend rejected (or was never given) its API key."""


class ValidationError(PipelineError):
    kind = ErrorKind.validation


class QuotaExceeded(PipelineError):
    kind = ErrorKind.quota_exceeded


class ContentRejected(PipelineError):
    kind = ErrorKind.content_rejected


class ModelNotFound(PipelineError):
    kind = ErrorKind.model_not_found


class UpstreamError(PipelineError):
    kind = ErrorKind.upstream


ERROR_CLASSES: Dict[ErrorKind, type] = {
    ErrorKind.auth: InvalidCredential,
    ErrorKind.validation: ValidationError,
    ErrorKind.quota_exceeded: QuotaExceeded,
    ErrorKind.content_rejected: ContentRejected,
    ErrorKind.model_not_found: ModelNotFound,
    ErrorKind.upstream: UpstreamError,
}

# Ordered: the first matching row wins. Bump the version whenever a row changes.
CLASSIFIER_VERSION = "error_classifier_v1"
ERROR_PATTERNS: Tuple[Tuple[ErrorKind, Tuple[str, ...]], ...] = (
    (ErrorKind.quota_exceeded, ("429", "resource_exhausted", "quota", "rate limit")),
    (ErrorKind.auth, ("403", "401", "api key not valid", "api_key_invalid", "permission_denied", "unauthorized")),
    (ErrorKind.content_rejected, ("safety", "blocked")),
    (ErrorKind.model_not_found, ("is not found", "not found for api version", "model not found", "404")),
)

RETRYABLE_KINDS: FrozenSet[ErrorKind] = frozenset({ErrorKind.quota_exceeded, ErrorKind.upstream})

USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.auth: "API credential is missing or invalid. Check the key in settings.",
    ErrorKind.validation: "The request was rejected as invalid.",
    ErrorKind.quota_exceeded: "API quota exceeded. Please try again shortly.",
    ErrorKind.content_rejected: "The request was blocked by the AI safety filter. Please revise the input.",
    ErrorKind.model_not_found: "The configured AI model could not be found. Choose a different model in settings.",
    ErrorKind.upstream: "An external service call failed.",
}

DIAGNOSTIC_TAIL_CHARS = 200


def classify_text(text: str) -> ErrorKind:
    lowered = str(text or "").lower()
    for kind, needles in ERROR_PATTERNS:
        if any(needle in lowered for needle in needles):
            return kind
    return ErrorKind.upstream


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PipelineError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.upstream
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    return classify_text(f"{exc.__class__.__name__}: {exc}")


def classify_status(status_code: int) -> ErrorKind:
    if status_code in (401, 403):
        return ErrorKind.auth
    if status_code == 429:
        return ErrorKind.quota_exceeded
    return ErrorKind.upstream


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def truncate_detail(text: str, limit: int = DIAGNOSTIC_TAIL_CHARS) -> str:
    text = str(text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def user_message(kind: ErrorKind, detail: str = "") -> str:
    base = USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.upstream])
    tail = truncate_detail(detail)
    return f"{base} ({tail})" if tail else base


def to_pipeline_error(
    exc: BaseException,
    classifier: Callable[[BaseException], ErrorKind] = classify_error,
    *,
    source: Optional[str] = None,
) -> PipelineError:
    if isinstance(exc, PipelineError):
        return exc
    kind = classifier(exc)
    error_cls = ERROR_CLASSES.get(kind, UpstreamError)
    return error_cls(f"{exc.__class__.__name__}: {exc}", source=source)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 16.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(settings.retry_max_attempts)),
            backoff_seconds=max(0.0, float(settings.retry_backoff_seconds)),
            max_backoff_seconds=max(0.0, float(settings.retry_backoff_max_seconds)),
        )


def _log_before_sleep(label: str, classifier: Callable[[BaseException], ErrorKind]):
    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        kind = classifier(exc) if exc is not None else ErrorKind.upstream
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s attempt %d failed (%s), retrying in %.2fs: %s",
            label,
            retry_state.attempt_number,
            kind.value,
            wait,
            truncate_detail(str(exc)),
        )

    return _before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    classifier: Callable[[BaseException], ErrorKind] = classify_error,
    label: str = "operation",
    source: Optional[str] = None,
) -> T:
    """Run ``operation`` until it succeeds, fails non-retryably, or runs out of attempts.

    The final failure is always raised as a classified ``PipelineError``.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_random_exponential(multiplier=policy.backoff_seconds, max=policy.max_backoff_seconds),
        retry=retry_if_exception(lambda exc: isinstance(exc, Exception) and is_retryable(classifier(exc))),
        before_sleep=_log_before_sleep(label, classifier),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                result = await operation()
    except PipelineError:
        raise
    except Exception as exc:
        raise to_pipeline_error(exc, classifier, source=source) from exc
    return result
