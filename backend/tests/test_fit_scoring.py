import asyncio
import json
from types import SimpleNamespace

import pytest

from conftest import FakeReasoningProvider, build_settings
from grantscan.models.company import CompanyProfile
from grantscan.models.fit import Eligibility, FitDimensions
from grantscan.models.program import Program
from grantscan.services.fit_scoring import (
    FIT_REQUEST_CONFIG,
    SCORING_SCHEME_VERSION,
    FitScoringEngine,
    build_fit_prompt,
    compute_fit_score,
    parse_fit_response,
)
from grantscan.services.llm import LLMRequest, LLMStage, ReasoningOrchestrator
from grantscan.services.llm.providers.gemini_provider import GeminiProvider, sanitize_config
from grantscan.services.resilience import ContentRejected, InvalidCredential, QuotaExceeded, UpstreamError

COMPANY = CompanyProfile(
    name="그린테크",
    industry="소프트웨어",
    revenue=1_500_000_000,
    employees=25,
    address="부산광역시 해운대구 센텀중앙로 1",
    certifications=("벤처기업",),
)

PROGRAM = Program(
    program_name="AI 바우처",
    organizer="NIPA",
    expected_grant=300_000_000,
    official_end_date="2025-03-31",
)


def _reply(dims=(80, 80, 80, 80, 80), eligibility="eligible", **extra):
    keys = ("eligibilityMatch", "industryRelevance", "scaleFit", "competitiveness", "strategicAlignment")
    payload = {
        "eligibility": eligibility,
        "dimensions": dict(zip(keys, dims)),
        "eligibilityDetails": {"met": ["중소기업"], "unmet": [], "unclear": ["매출 요건"]},
        "strengths": ["AI 역량"],
        "weaknesses": [],
        "advice": "사업계획서를 보완하세요.",
        "recommendedStrategy": "기술성 강조",
        "keyActions": ["서류 준비"],
    }
    payload.update(extra)
    return json.dumps(payload, ensure_ascii=False)


def _engine(responses, **settings):
    provider = FakeReasoningProvider(responses)
    provider_settings = build_settings(**settings)
    orchestrator = ReasoningOrchestrator(provider_settings, provider)
    return FitScoringEngine(provider_settings, orchestrator), provider


def test_compute_fit_score_is_weighted_mean():
    assert compute_fit_score(FitDimensions(100, 100, 100, 100, 100)) == 100
    assert compute_fit_score(FitDimensions(0, 0, 0, 0, 0)) == 0
    assert compute_fit_score(FitDimensions(80, 60, 40, 20, 0)) == 52


def test_parse_recomputes_score_and_reads_fenced_json():
    text = "분석 결과입니다.\n```json\n" + _reply((80, 60, 40, 20, 0), fitScore=99) + "\n```"
    result = parse_fit_response(text)
    assert result.fit_score == 52
    assert result.eligibility == Eligibility.eligible
    assert result.eligibility_details.unclear == ["매출 요건"]
    assert result.scoring_scheme == SCORING_SCHEME_VERSION
    assert result.region_mismatch is False


def test_parse_accepts_korean_eligibility_labels():
    assert parse_fit_response(_reply(eligibility="가능")).eligibility == Eligibility.eligible
    assert parse_fit_response(_reply(eligibility="검토 필요")).eligibility == Eligibility.unclear


def test_parse_defaults_missing_narrative_fields():
    text = json.dumps({"eligibility": "unclear", "dimensions": {
        "eligibilityMatch": 50, "industryRelevance": 50, "scaleFit": 50,
        "competitiveness": 50, "strategicAlignment": 50,
    }})
    result = parse_fit_response(text)
    assert result.strengths == []
    assert result.advice == ""
    assert result.fit_score == 50


@pytest.mark.parametrize(
    "text",
    [
        _reply((80, 60, 140, 20, 0)),
        _reply((80, 60, 40, 20, -1)),
        _reply((80, 60, 40, 20, 0), fitScore=120),
        _reply(eligibility="maybe"),
        _reply(strengths="one string"),
        json.dumps({"eligibility": "eligible", "dimensions": {"eligibilityMatch": 80}}),
        json.dumps({"eligibility": "eligible"}),
        "not json at all",
        "",
    ],
)
def test_parse_rejects_malformed_output(text):
    with pytest.raises(UpstreamError):
        parse_fit_response(text)


def test_prompt_is_deterministic_and_describes_both_sides():
    first = build_fit_prompt(COMPANY, PROGRAM)
    assert first == build_fit_prompt(COMPANY, PROGRAM)
    assert "그린테크" in first
    assert "AI 바우처" in first
    assert "15.0억원" in first
    assert "3.0억원" in first


def test_engine_is_idempotent_for_identical_replies():
    engine, provider = _engine([_reply((90, 70, 60, 50, 40))])
    program = Program(program_name="AI 바우처", regions=["전국"])
    first = asyncio.run(engine.score(COMPANY, program))
    second = asyncio.run(engine.score(COMPANY, program))

    assert first == second
    assert provider.calls[0]["contents"] == provider.calls[1]["contents"]
    assert provider.calls[0]["config"] == FIT_REQUEST_CONFIG
    assert first.region_mismatch is False


def test_region_mismatch_lowers_eligibility_but_keeps_program():
    engine, _ = _engine([_reply()])
    program = Program(program_name="서울 창업 지원", regions=["서울특별시"])
    result = asyncio.run(engine.score(COMPANY, program))

    assert result.region_mismatch is True
    assert result.dimensions.eligibility_match == 50
    assert result.fit_score == 70


def test_content_rejection_is_not_retried():
    engine, provider = _engine([ContentRejected("blocked by safety")])
    with pytest.raises(ContentRejected):
        asyncio.run(engine.score(COMPANY, PROGRAM))
    assert len(provider.calls) == 1


def test_malformed_reply_is_retried_and_traced():
    provider = FakeReasoningProvider(["sorry, no JSON today", _reply()])
    orchestrator = ReasoningOrchestrator(build_settings(), provider)
    request = LLMRequest(stage=LLMStage.fit_scoring, contents="prompt", config=dict(FIT_REQUEST_CONFIG))
    response, parsed = asyncio.run(orchestrator.run(request, parse=lambda r: parse_fit_response(r.text)))

    assert parsed.fit_score == 80
    assert [attempt.status for attempt in response.attempts] == ["retryable_error", "success"]
    assert response.attempts[0].error_class == "upstream"


def test_retry_exhaustion_surfaces_last_error():
    engine, provider = _engine(["{}"])
    with pytest.raises(UpstreamError):
        asyncio.run(engine.score(COMPANY, PROGRAM))
    assert len(provider.calls) == 3


class _FakeModels:
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.configs = []

    async def generate_content(self, *, model, contents, config=None):
        self.configs.append(config)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _gemini(outcomes, **settings):
    models = _FakeModels(outcomes)
    created = []

    def factory(api_key):
        created.append(api_key)
        return SimpleNamespace(aio=SimpleNamespace(models=models))

    provider = GeminiProvider(build_settings(**settings), client_factory=factory)
    return provider, models, created


def test_sanitize_config_accepts_camel_case_and_drops_unknown_keys():
    cleaned = sanitize_config({"responseMimeType": "application/json", "temperature": 0, "bogusKnob": 1})
    assert cleaned == {"response_mime_type": "application/json", "temperature": 0}


def test_gemini_missing_key_is_invalid_credential_without_client():
    provider, _, created = _gemini([])
    with pytest.raises(InvalidCredential):
        asyncio.run(provider.generate(model="gemini-2.0-flash", contents="hi"))
    assert created == []


def test_gemini_falls_back_to_minimal_config_on_rejection():
    ok = SimpleNamespace(text='{"ok": true}', candidates=[{"index": 0}], prompt_feedback=None)
    provider, models, _ = _gemini(
        [RuntimeError('400 Invalid JSON payload received. Unknown name "topK"'), ok],
        gemini_api_key="key",
    )
    response = asyncio.run(
        provider.generate(model="gemini-2.0-flash", contents="hi", config={"temperature": 0, "top_k": 5})
    )
    assert response.text == '{"ok": true}'
    assert response.candidates == [{"index": 0}]
    assert models.configs[0].top_k == 5
    assert models.configs[1].top_k is None
    assert models.configs[1].temperature == 0


def test_gemini_blocked_response_is_content_rejected():
    blocked = SimpleNamespace(text="", candidates=[SimpleNamespace(finish_reason="SAFETY")], prompt_feedback=None)
    provider, _, _ = _gemini([blocked], gemini_api_key="key")
    with pytest.raises(ContentRejected):
        asyncio.run(provider.generate(model="gemini-2.0-flash", contents="hi"))


def test_gemini_status_code_is_classified():
    class _ApiError(Exception):
        code = 429

    provider, _, _ = _gemini([_ApiError("Resource has been exhausted")], gemini_api_key="key")
    with pytest.raises(QuotaExceeded):
        asyncio.run(provider.generate(model="gemini-2.0-flash", contents="hi"))


def test_gemini_reads_key_at_call_time():
    ok = SimpleNamespace(text="pong", candidates=[], prompt_feedback=None)
    provider, _, created = _gemini([ok, ok], gemini_api_key="first")
    asyncio.run(provider.generate(model="gemini-2.0-flash", contents="ping"))
    provider._settings.update(gemini_api_key="second")
    asyncio.run(provider.generate(model="gemini-2.0-flash", contents="ping"))
    assert created == ["first", "second"]
