"""Canonical support-program record shared by every connector."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class Program:
    program_name: str
    organizer: Optional[str] = None
    source: Optional[str] = None
    source_id: Optional[str] = None
    detail_url: Optional[str] = None
    support_type: Optional[str] = None
    description: Optional[str] = None
    expected_grant: Optional[int] = None  # KRW
    official_end_date: Optional[str] = None
    internal_deadline: Optional[str] = None
    eligibility_criteria: Optional[List[str]] = None
    exclusion_criteria: Optional[List[str]] = None
    target_audience: Optional[str] = None
    evaluation_criteria: Optional[List[str]] = None
    required_documents: Optional[List[str]] = None
    support_details: Optional[str] = None
    selection_process: Optional[List[str]] = None
    total_budget: Optional[str] = None
    project_period: Optional[str] = None
    objectives: Optional[str] = None
    categories: Optional[List[str]] = None
    keywords: Optional[List[str]] = None
    department: Optional[str] = None
    regions: Optional[List[str]] = None
    sources: List[str] = field(default_factory=list)

    def populated_field_count(self) -> int:
        return sum(1 for name in MERGEABLE_FIELDS if not is_empty(getattr(self, name)))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "programName": self.program_name,
            "organizer": self.organizer,
            "source": self.source,
            "sources": list(self.sources),
            "sourceId": self.source_id,
            "detailUrl": self.detail_url,
            "supportType": self.support_type,
            "description": self.description,
            "expectedGrant": self.expected_grant,
            "officialEndDate": self.official_end_date,
            "internalDeadline": self.internal_deadline,
            "eligibilityCriteria": self.eligibility_criteria,
            "exclusionCriteria": self.exclusion_criteria,
            "targetAudience": self.target_audience,
            "evaluationCriteria": self.evaluation_criteria,
            "requiredDocuments": self.required_documents,
            "supportDetails": self.support_details,
            "selectionProcess": self.selection_process,
            "totalBudget": self.total_budget,
            "projectPeriod": self.project_period,
            "objectives": self.objectives,
            "categories": self.categories,
            "keywords": self.keywords,
            "department": self.department,
            "regions": self.regions,
        }


# Fields merged across sources; identity and bookkeeping fields are excluded.
MERGEABLE_FIELDS: Tuple[str, ...] = tuple(
    f.name for f in fields(Program) if f.name not in {"program_name", "source", "sources"}
)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False
