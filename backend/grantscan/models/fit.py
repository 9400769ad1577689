"""Fit analysis result produced once per (company, program) pair."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple


class Eligibility(str, Enum):
    eligible = "eligible"
    partially_eligible = "partially_eligible"
    ineligible = "ineligible"
    unclear = "unclear"


DIMENSION_KEYS: Tuple[str, ...] = (
    "eligibilityMatch",
    "industryRelevance",
    "scaleFit",
    "competitiveness",
    "strategicAlignment",
)

SCORE_MIN = 0
SCORE_MAX = 100


@dataclass(frozen=True)
class FitDimensions:
    eligibility_match: int
    industry_relevance: int
    scale_fit: int
    competitiveness: int
    strategic_alignment: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "eligibilityMatch": self.eligibility_match,
            "industryRelevance": self.industry_relevance,
            "scaleFit": self.scale_fit,
            "competitiveness": self.competitiveness,
            "strategicAlignment": self.strategic_alignment,
        }


@dataclass(frozen=True)
class EligibilityDetails:
    met: List[str] = field(default_factory=list)
    unmet: List[str] = field(default_factory=list)
    unclear: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, List[str]]:
        return {"met": list(self.met), "unmet": list(self.unmet), "unclear": list(self.unclear)}


@dataclass(frozen=True)
class FitAnalysisResult:
    fit_score: int
    eligibility: Eligibility
    dimensions: FitDimensions
    eligibility_details: EligibilityDetails
    strengths: List[str]
    weaknesses: List[str]
    advice: str
    recommended_strategy: str
    key_actions: List[str]
    region_mismatch: bool = False
    scoring_scheme: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fitScore": self.fit_score,
            "eligibility": self.eligibility.value,
            "dimensions": self.dimensions.as_dict(),
            "eligibilityDetails": self.eligibility_details.as_dict(),
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "advice": self.advice,
            "recommendedStrategy": self.recommended_strategy,
            "keyActions": list(self.key_actions),
            "regionMismatch": self.region_mismatch,
            "scoringScheme": self.scoring_scheme,
        }
