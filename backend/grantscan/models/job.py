"""Transient scan job state, owned by the task running the job."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from grantscan.models.fit import FitAnalysisResult
from grantscan.models.program import Program


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})


class JobStage(str, Enum):
    fetching = "fetching programs"
    scoring = "scoring"
    finalizing = "finalizing"


@dataclass
class ProgramFailure:
    program_name: str
    kind: str
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {"programName": self.program_name, "kind": self.kind, "message": self.message}


@dataclass
class ScoredProgram:
    program: Program
    analysis: FitAnalysisResult

    def as_dict(self) -> Dict[str, Any]:
        return {"program": self.program.as_dict(), "analysis": self.analysis.as_dict()}


@dataclass
class ScanJob:
    job_id: str = field(default_factory=lambda: f"scan_{uuid.uuid4().hex[:12]}")
    programs: List[Program] = field(default_factory=list)
    current: int = 0
    total: int = 0
    stage: str = ""
    cancel_requested: bool = False
    status: JobStatus = JobStatus.pending
    results: List[ScoredProgram] = field(default_factory=list)
    failures: List[ProgramFailure] = field(default_factory=list)
    detail_failures: List[ProgramFailure] = field(default_factory=list)
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: JobStatus) -> bool:
        """Move to ``status`` unless already terminal. Returns whether it moved."""
        if self.is_terminal:
            return False
        self.status = status
        if status in TERMINAL_STATUSES:
            self.finished_at = datetime.utcnow()
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "stage": self.stage,
            "current": self.current,
            "total": self.total,
            "scored": len(self.results),
            "failed": len(self.failures),
            "detailFailed": len(self.detail_failures),
            "cancelRequested": self.cancel_requested,
            "error": self.error_message,
            "errorKind": self.error_kind,
            "createdAt": self.created_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
