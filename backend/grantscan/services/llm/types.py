from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class LLMStage(str, Enum):
    fit_scoring = "fit_scoring"
    passthrough = "passthrough"
    key_verification = "key_verification"
    detail_extraction = "detail_extraction"


@dataclass
class LLMRequest:
    stage: LLMStage
    contents: Any
    model: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelAttemptTrace:
    stage: str
    provider: str
    model: str
    latency_ms: int
    status: str
    retry_count: int
    error_class: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "provider": self.provider,
            "model": self.model,
            "latencyMs": self.latency_ms,
            "status": self.status,
            "retryCount": self.retry_count,
            "errorClass": self.error_class,
            "errorMessage": self.error_message,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
        }


@dataclass
class LLMResponse:
    """Only ``text`` and ``candidates`` are assumed to exist on a backend reply."""
    text: str
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    provider: str = ""
    model: str = ""
    attempts: List[ModelAttemptTrace] = field(default_factory=list)


def now_iso() -> str:
    return datetime.utcnow().isoformat()
