import asyncio

import httpx
import pytest

from conftest import build_settings, mock_client
from grantscan.models.company import CompanyProfile
from grantscan.models.program import Program
from grantscan.services.aggregator import (
    Aggregator,
    SourceSelection,
    dedup_key,
    internal_deadline,
    merge_programs,
    normalize_date,
)
from grantscan.services.connectors import SourceConnector, SourceParams, build_connectors
from grantscan.services.resilience import UpstreamError, ValidationError

COMPANY = CompanyProfile(name="그린테크", industry="제조", address="서울특별시 강남구 테헤란로 1")


class _StaticConnector(SourceConnector):
    def __init__(self, name, programs=None, error=None):
        super().__init__(build_settings())
        self.name = name
        self._programs = programs or []
        self._error = error
        self.calls = 0

    async def fetch(self, params):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return list(self._programs)


def _program(name, source, **fields):
    return Program(program_name=name, source=source, sources=[source], **fields)


def _aggregate(connectors, sources, settings=None, **selection):
    aggregator = Aggregator(settings or build_settings(), connectors)
    return asyncio.run(aggregator.aggregate(COMPANY, SourceSelection(sources=sources, **selection)))


def test_dedup_key_normalizes_name_organizer_and_date():
    a = _program("AI 바우처 지원사업", "odcloud", organizer="NIPA", official_end_date="2025.03.31")
    b = _program("AI바우처  지원사업", "kstartup", organizer="nipa", official_end_date="20250331")
    assert dedup_key(a) == dedup_key(b)


def test_merge_keeps_one_record_and_every_non_empty_field():
    odcloud = _program(
        "AI 바우처",
        "odcloud",
        organizer="NIPA",
        official_end_date="2025.03.31",
        support_type="R&D",
        support_details="최대 3억원",
    )
    kstartup = _program(
        "AI  바우처",
        "kstartup",
        organizer="nipa",
        official_end_date="20250331",
        support_type="사업화",
        description="AI 솔루션 도입 지원",
        target_audience="중소기업",
    )
    connectors = {
        "odcloud": _StaticConnector("odcloud", [odcloud]),
        "kstartup": _StaticConnector("kstartup", [kstartup]),
    }
    result = _aggregate(connectors, ["kstartup", "odcloud"])

    assert len(result.programs) == 1
    merged = result.programs[0]
    # Conflicting values resolve by connector priority, not request order.
    assert merged.support_type == "R&D"
    assert merged.description == "AI 솔루션 도입 지원"
    assert merged.target_audience == "중소기업"
    assert merged.sources == ["odcloud", "kstartup"]
    assert merged.source == "odcloud"
    assert merged.official_end_date == "2025-03-31"
    assert merged.internal_deadline == "2025-03-24"
    assert merged.expected_grant == 300_000_000
    assert result.failures == []


def test_more_populated_variant_wins_within_one_connector():
    sparse = _program("창업도약패키지", "kstartup", organizer="창업진흥원", support_type="사업화")
    rich = _program(
        "창업도약패키지",
        "kstartup",
        organizer="창업진흥원",
        support_type="R&D",
        description="도약기 기업 지원",
        target_audience="3~7년 기업",
    )
    merged = merge_programs([sparse, rich])
    assert len(merged) == 1
    assert merged[0].support_type == "R&D"
    assert merged[0].program_name == "창업도약패키지"


def test_output_preserves_first_seen_order():
    programs = [
        _program("다", "odcloud", organizer="A"),
        _program("가", "odcloud", organizer="A"),
        _program("다", "odcloud", organizer="a"),
        _program("나", "odcloud", organizer="A"),
    ]
    assert [p.program_name for p in merge_programs(programs)] == ["다", "가", "나"]


def test_regions_are_normalized_after_merge():
    connectors = {
        "odcloud": _StaticConnector("odcloud", [_program("지역 특화", "odcloud", regions=["서울특별시", "경기도"])]),
    }
    result = _aggregate(connectors, ["odcloud"])
    assert result.programs[0].regions == ["서울", "경기"]


def test_partial_failure_keeps_other_sources_and_records_missing_credential():
    odcloud_payload = {"data": [{"지원사업명": "인천 AI 바우처", "주관기관": "인천TP"}]}
    mss_xml = (
        "<response><body><items><item><title>스마트공장 지원</title>"
        "<applicationEndDate>2025-04-30</applicationEndDate></item></items></body></response>"
    )
    kstartup_payload = {
        "data": [
            {"biz_pbanc_nm": "예비창업패키지", "sprv_inst": "창업진흥원"},
            {"biz_pbanc_nm": "스마트공장 지원", "sprv_inst": "중소벤처기업부", "pbanc_rcpt_end_dt": "20250430"},
        ]
    }
    requested_hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested_hosts.append(request.url.host)
        if "odcloud" in request.url.host:
            return httpx.Response(200, json=odcloud_payload)
        if "mssBizService" in request.url.path:
            return httpx.Response(200, text=mss_xml)
        return httpx.Response(200, json=kstartup_payload)

    settings = build_settings(data_go_kr_api_key="key")

    async def main():
        async with mock_client(handler) as client:
            aggregator = Aggregator(settings, build_connectors(settings, client))
            return await aggregator.aggregate(
                COMPANY, SourceSelection(sources=["odcloud", "mss_biz", "kstartup"])
            )

    result = asyncio.run(main())

    assert [p.program_name for p in result.programs] == ["스마트공장 지원", "예비창업패키지"]
    assert result.programs[0].sources == ["mss_biz", "kstartup"]
    assert [(f.source, f.kind) for f in result.failures] == [("odcloud", "auth")]
    assert not result.all_failed
    assert "api.odcloud.kr" not in requested_hosts


def test_failed_connector_is_retried_then_recorded():
    flaky = _StaticConnector("mss_biz", error=UpstreamError("503 from gateway"))
    healthy = _StaticConnector("kstartup", [_program("예비창업패키지", "kstartup")])
    result = _aggregate({"mss_biz": flaky, "kstartup": healthy}, ["mss_biz", "kstartup"])

    assert flaky.calls == 3
    assert [p.program_name for p in result.programs] == ["예비창업패키지"]
    assert result.failures[0].source == "mss_biz"
    assert result.failures[0].kind == "upstream"


def test_all_listing_sources_failing_is_flagged():
    connectors = {
        "odcloud": _StaticConnector("odcloud", error=ValidationError("bad")),
        "kstartup": _StaticConnector("kstartup", error=UpstreamError("down")),
    }
    result = _aggregate(connectors, ["odcloud", "kstartup"])
    assert result.programs == []
    assert result.all_failed


def test_traversal_endpoint_path_rejects_the_whole_request():
    odcloud = _StaticConnector("odcloud", [_program("x", "odcloud")])
    with pytest.raises(ValidationError):
        _aggregate(
            {"odcloud": odcloud},
            ["odcloud"],
            params={"odcloud": SourceParams(endpoint_path="/15049270/v1/../escape")},
        )
    assert odcloud.calls == 0


def test_empty_or_unknown_selection_is_validation_error():
    with pytest.raises(ValidationError):
        _aggregate({"odcloud": _StaticConnector("odcloud")}, [])
    with pytest.raises(ValidationError):
        _aggregate({"odcloud": _StaticConnector("odcloud")}, ["nope"])


def test_registry_financials_enrich_a_copy_of_the_profile():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/list.json"):
            return httpx.Response(200, json={"status": "000", "list": [{"corp_code": "00222222", "corp_name": "그린테크"}]})
        if request.url.path.endswith("/fnlttSinglAcnt.json"):
            year = int(request.url.params["bsns_year"])
            amount = f"{year},000,000"
            return httpx.Response(200, json={"status": "000", "list": [{"account_nm": "매출액", "thstrm_amount": amount}]})
        return httpx.Response(200, json={"data": [{"지원사업명": "인천 AI 바우처"}]})

    settings = build_settings(dart_api_key="key", odcloud_api_key="key")

    async def main():
        async with mock_client(handler) as client:
            aggregator = Aggregator(settings, build_connectors(settings, client))
            return await aggregator.aggregate(
                COMPANY, SourceSelection(sources=["odcloud", "dart"], financial_years=3)
            )

    result = asyncio.run(main())

    years = [row.year for row in result.financials]
    assert len(years) == 3
    assert years == sorted(years)
    assert result.company.revenue == years[-1] * 1_000_000
    assert "Revenue" in result.company.financial_trend
    assert COMPANY.revenue is None
    assert [p.program_name for p in result.programs] == ["인천 AI 바우처"]


def test_normalize_date_and_internal_deadline():
    assert normalize_date("20250131") == "2025-01-31"
    assert normalize_date("2025.1.5") == "2025-01-05"
    assert normalize_date("2025년 3월 2일 18:00") == "2025-03-02"
    assert normalize_date("상시 모집") == "상시 모집"
    assert normalize_date(None) is None
    assert internal_deadline("2025-03-05") == "2025-02-26"
    assert internal_deadline("상시 모집") is None


class _MemoryCache:
    def __init__(self):
        self.entries = {}

    async def get_json(self, namespace, payload):
        return self.entries.get((namespace, payload))

    async def set_json(self, namespace, payload, value, ttl_seconds=None):
        self.entries[(namespace, payload)] = value


def _cached_odcloud_run(settings, cache, requested_paths):
    def handler(request: httpx.Request) -> httpx.Response:
        requested_paths.append(request.url.path)
        return httpx.Response(200, json={"data": [{"지원사업명": "인천 AI 바우처", "주관기관": "인천TP"}]})

    async def main():
        async with mock_client(handler) as client:
            aggregator = Aggregator(settings, build_connectors(settings, client), cache)
            return await aggregator.aggregate(COMPANY, SourceSelection(sources=["odcloud"]))

    return asyncio.run(main())


def test_cached_listing_still_requires_a_credential():
    settings = build_settings(odcloud_api_key="key")
    cache = _MemoryCache()
    requested_paths = []

    first = _cached_odcloud_run(settings, cache, requested_paths)
    assert [p.program_name for p in first.programs] == ["인천 AI 바우처"]
    assert len(cache.entries) == 1

    settings.update(odcloud_api_key="")
    second = _cached_odcloud_run(settings, cache, requested_paths)

    assert second.programs == []
    assert [(f.source, f.kind) for f in second.failures] == [("odcloud", "auth")]
    assert second.all_failed
    assert len(requested_paths) == 1


def test_listing_cache_key_follows_configured_endpoint():
    settings = build_settings(odcloud_api_key="key")
    cache = _MemoryCache()
    requested_paths = []

    _cached_odcloud_run(settings, cache, requested_paths)
    _cached_odcloud_run(settings, cache, requested_paths)
    assert len(requested_paths) == 1

    settings.update(odcloud_endpoint_path="/15049270/v2/uddi:0f3c2b1a-aaaa-bbbb")
    _cached_odcloud_run(settings, cache, requested_paths)

    assert len(requested_paths) == 2
    assert requested_paths[-1].endswith("/15049270/v2/uddi:0f3c2b1a-aaaa-bbbb")
    assert len(cache.entries) == 2
