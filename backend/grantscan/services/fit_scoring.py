"""Fit scoring: one reasoning call per (company, program) pair, validated into FitAnalysisResult.

The backend proposes the dimension vector and the narrative fields; the overall
fitScore is always recomputed here from the dimensions so that it stays a
deterministic function of them for a given weighting scheme.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional

from grantscan.config import SettingsProvider
from grantscan.models.company import CompanyProfile
from grantscan.models.fit import (
    DIMENSION_KEYS,
    SCORE_MAX,
    SCORE_MIN,
    Eligibility,
    EligibilityDetails,
    FitAnalysisResult,
    FitDimensions,
)
from grantscan.models.program import Program
from grantscan.services.llm import LLMRequest, LLMStage, ReasoningOrchestrator
from grantscan.services.regions import extract_region_from_address, is_region_mismatch
from grantscan.services.resilience import UpstreamError

logger = logging.getLogger(__name__)

SCORING_SCHEME_VERSION = "fit_weights_v1"
DIMENSION_WEIGHTS: Dict[str, int] = {
    "eligibilityMatch": 35,
    "industryRelevance": 25,
    "scaleFit": 15,
    "competitiveness": 15,
    "strategicAlignment": 10,
}

ELIGIBILITY_LABELS: Dict[str, Eligibility] = {
    "eligible": Eligibility.eligible,
    "partially_eligible": Eligibility.partially_eligible,
    "partially-eligible": Eligibility.partially_eligible,
    "partially eligible": Eligibility.partially_eligible,
    "ineligible": Eligibility.ineligible,
    "not_eligible": Eligibility.ineligible,
    "unclear": Eligibility.unclear,
    "가능": Eligibility.eligible,
    "부분 가능": Eligibility.partially_eligible,
    "조건부 가능": Eligibility.partially_eligible,
    "불가": Eligibility.ineligible,
    "검토 필요": Eligibility.unclear,
}

_STRING_LIST = {"type": "ARRAY", "items": {"type": "STRING"}}

FIT_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "eligibility": {"type": "STRING", "enum": [e.value for e in Eligibility]},
        "dimensions": {
            "type": "OBJECT",
            "properties": {key: {"type": "INTEGER"} for key in DIMENSION_KEYS},
            "required": list(DIMENSION_KEYS),
        },
        "eligibilityDetails": {
            "type": "OBJECT",
            "properties": {"met": _STRING_LIST, "unmet": _STRING_LIST, "unclear": _STRING_LIST},
        },
        "strengths": _STRING_LIST,
        "weaknesses": _STRING_LIST,
        "advice": {"type": "STRING"},
        "recommendedStrategy": {"type": "STRING"},
        "keyActions": _STRING_LIST,
    },
    "required": ["eligibility", "dimensions"],
}

FIT_REQUEST_CONFIG: Dict[str, Any] = {
    "response_mime_type": "application/json",
    "response_schema": FIT_RESPONSE_SCHEMA,
    "temperature": 0,
}


def compute_fit_score(dimensions: FitDimensions) -> int:
    """Weighted mean of the dimension vector, rounded half up."""
    values = dimensions.as_dict()
    total = sum(values[key] * weight for key, weight in DIMENSION_WEIGHTS.items())
    weight_sum = sum(DIMENSION_WEIGHTS.values())
    return (total * 2 + weight_sum) // (2 * weight_sum)


def _won_to_eok(amount: Optional[int]) -> str:
    return f"{amount / 100_000_000:.1f}억원" if amount else "미공개"


def _join(values: Optional[Any], empty: str = "없음") -> str:
    items = [str(v).strip() for v in (values or []) if str(v).strip()]
    return ", ".join(items) if items else empty


def build_fit_prompt(company: CompanyProfile, program: Program) -> str:
    """Same (company, program) pair always yields the same prompt text."""
    lines = [
        "당신은 정부 지원사업 전문 컨설턴트입니다.",
        "",
        "## 기업 정보",
        f"- 기업명: {company.name}",
        f"- 업종: {company.industry or '미등록'}",
        f"- 사업자 유형: {company.business_type or '미등록'}",
        f"- 설립연도: {company.founded_year or '미등록'}",
        f"- 매출액: {_won_to_eok(company.revenue)}",
        f"- 재무 추이: {company.financial_trend or '없음'}",
        f"- 직원수: {company.employees or 0}명",
        f"- 소재지: {company.address or '미등록'}",
        f"- 주요 제품: {_join(company.main_products, '미등록')}",
        f"- 핵심역량: {_join(company.core_competencies, '미등록')}",
        f"- 보유 인증: {_join(company.certifications)}",
        f"- 지식재산권: {_join(company.ip_list)}",
        f"- 기업 설명: {company.description or '없음'}",
        "",
        "## 지원사업 정보",
        f"- 사업명: {program.program_name}",
        f"- 주관기관: {program.organizer or '미상'}",
        f"- 지원유형: {program.support_type or '미상'}",
        f"- 지원금: {_won_to_eok(program.expected_grant)}",
        f"- 마감일: {program.official_end_date or '미정'}",
        f"- 지원 지역: {_join(program.regions, '전국')}",
        f"- 지원 대상: {program.target_audience or '없음'}",
        f"- 자격 요건: {_join(program.eligibility_criteria)}",
        f"- 제외 대상: {_join(program.exclusion_criteria)}",
        f"- 평가 기준: {_join(program.evaluation_criteria)}",
        f"- 지원 내용: {program.support_details or '없음'}",
        f"- 사업설명: {program.description or '없음'}",
        "",
        "## 요청사항",
        "기업과 지원사업의 적합도를 분석하세요.",
        "dimensions의 각 항목(eligibilityMatch, industryRelevance, scaleFit, competitiveness,"
        " strategicAlignment)은 0-100 정수입니다.",
        "eligibility는 eligible, partially_eligible, ineligible, unclear 중 하나입니다.",
        "eligibilityDetails에는 충족(met), 미충족(unmet), 불명확(unclear) 요건을 나열하세요.",
        "strengths, weaknesses, keyActions는 문자열 배열, advice와 recommendedStrategy는 문자열로 JSON 출력하세요.",
    ]
    return "\n".join(lines)


_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def clean_and_parse_json(text: str) -> Any:
    """Parse a JSON reply, tolerating code fences and surrounding prose."""
    raw = str(text or "").strip()
    if not raw:
        raise UpstreamError("Reasoning backend returned an empty response")
    candidates = [raw]
    fenced = _CODE_FENCE.search(raw)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    raise UpstreamError(f"Reasoning backend returned non-JSON output: {raw[:100]}")


def _score_value(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise UpstreamError(f"Dimension {name} is missing or not a number")
    if not SCORE_MIN <= value <= SCORE_MAX:
        raise UpstreamError(f"Dimension {name}={value} outside [{SCORE_MIN},{SCORE_MAX}]")
    return int(round(value))


def _string_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise UpstreamError(f"Field {key} must be a list")
    return [str(item).strip() for item in value if str(item).strip()]


def _string(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return str(value).strip() if value is not None else ""


def parse_eligibility(value: Any) -> Eligibility:
    label = str(value or "").strip()
    result = ELIGIBILITY_LABELS.get(label) or ELIGIBILITY_LABELS.get(label.lower())
    if result is None:
        raise UpstreamError(f"Unknown eligibility classification: {label[:40] or '<missing>'}")
    return result


def parse_fit_response(text: str) -> FitAnalysisResult:
    data = clean_and_parse_json(text)
    if not isinstance(data, dict):
        raise UpstreamError("Fit response is not a JSON object")

    raw_dims = data.get("dimensions")
    if not isinstance(raw_dims, dict):
        raise UpstreamError("Fit response has no dimensions")
    scores = [_score_value(key, raw_dims.get(key)) for key in DIMENSION_KEYS]
    dimensions = FitDimensions(*scores)

    # The backend's own overall score is only range-checked; the stored one is recomputed.
    if data.get("fitScore") is not None:
        _score_value("fitScore", data.get("fitScore"))

    details = data.get("eligibilityDetails") or {}
    if not isinstance(details, dict):
        raise UpstreamError("Field eligibilityDetails must be an object")

    return FitAnalysisResult(
        fit_score=compute_fit_score(dimensions),
        eligibility=parse_eligibility(data.get("eligibility")),
        dimensions=dimensions,
        eligibility_details=EligibilityDetails(
            met=_string_list(details, "met"),
            unmet=_string_list(details, "unmet"),
            unclear=_string_list(details, "unclear"),
        ),
        strengths=_string_list(data, "strengths"),
        weaknesses=_string_list(data, "weaknesses"),
        advice=_string(data, "advice"),
        recommended_strategy=_string(data, "recommendedStrategy"),
        key_actions=_string_list(data, "keyActions"),
        scoring_scheme=SCORING_SCHEME_VERSION,
    )


def apply_region_penalty(
    result: FitAnalysisResult,
    company: CompanyProfile,
    program: Program,
    penalty: int,
) -> FitAnalysisResult:
    """Annotate a region mismatch and lower eligibilityMatch; the program is never dropped."""
    company_region = extract_region_from_address(company.address)
    if not is_region_mismatch(program.regions, company_region):
        return result
    lowered = max(SCORE_MIN, result.dimensions.eligibility_match - max(0, int(penalty)))
    dimensions = replace(result.dimensions, eligibility_match=lowered)
    return replace(
        result,
        dimensions=dimensions,
        fit_score=compute_fit_score(dimensions),
        region_mismatch=True,
    )


class FitScoringEngine:
    def __init__(self, settings: SettingsProvider, orchestrator: Optional[ReasoningOrchestrator] = None) -> None:
        self._settings = settings
        self._orchestrator = orchestrator or ReasoningOrchestrator(settings)

    async def score(self, company: CompanyProfile, program: Program) -> FitAnalysisResult:
        request = LLMRequest(
            stage=LLMStage.fit_scoring,
            contents=build_fit_prompt(company, program),
            config=dict(FIT_REQUEST_CONFIG),
            metadata={"program": program.program_name},
        )
        response, parsed = await self._orchestrator.run(request, parse=lambda r: parse_fit_response(r.text))
        result = apply_region_penalty(
            parsed,
            company,
            program,
            self._settings.current().region_mismatch_penalty,
        )
        logger.info(
            "Scored %r: fit=%d eligibility=%s attempts=%d",
            program.program_name,
            result.fit_score,
            result.eligibility.value,
            len(response.attempts),
        )
        return result
