import pytest

from grantscan.services.amounts import extract_grant_from_text, infer_expected_grant, parse_amount_from_scale
from grantscan.services.regions import (
    extract_region_from_address,
    is_region_mismatch,
    normalize_region,
    normalize_regions,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("서울특별시", "서울"),
        ("서울", "서울"),
        ("Seoul", "서울"),
        ("부산광역시", "부산"),
        ("경기도", "경기"),
        ("충청북도", "충북"),
        ("제주특별자치도", "제주"),
        ("전국", "전국"),
        ("해외", None),
        ("", None),
    ],
)
def test_normalize_region(raw, expected):
    assert normalize_region(raw) == expected


def test_normalize_regions_dedupes_and_keeps_unknown_labels():
    assert normalize_regions(["서울특별시", "서울", "해외"]) == ["서울", "해외"]
    assert normalize_regions(None) is None


def test_extract_region_from_address():
    assert extract_region_from_address("부산광역시 해운대구 센텀중앙로 1") == "부산"
    assert extract_region_from_address("경기도 성남시 분당구") == "경기"
    assert extract_region_from_address(None) is None


def test_region_mismatch_rules():
    assert is_region_mismatch(["서울"], "부산")
    assert not is_region_mismatch(["서울특별시", "부산광역시"], "부산")
    assert not is_region_mismatch(["전국"], "부산")
    assert not is_region_mismatch([], "부산")
    assert not is_region_mismatch(["서울"], None)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("최대 3억원", 300_000_000),
        ("1~3억원", 300_000_000),
        ("5,000만원 이내", 50_000_000),
        ("별도 공고", 0),
        ("무료 컨설팅", 0),
        ("70% 이내", 0),
        ("", 0),
    ],
)
def test_parse_amount_from_scale(raw, expected):
    assert parse_amount_from_scale(raw) == expected


def test_extract_grant_from_text_prefers_per_company_amount():
    assert extract_grant_from_text("총 100억원 규모, 기업당 최대 5천만원 지원") == 50_000_000
    assert extract_grant_from_text("지원 없음") == 0


def test_infer_expected_grant_falls_back_through_fields():
    assert infer_expected_grant("최대 2억원", None, None) == 200_000_000
    assert infer_expected_grant("별도 공고", "3억원", None) == 300_000_000
    assert infer_expected_grant(None, None, "기업당 최대 5천만원 지원") == 50_000_000
    assert infer_expected_grant(None, None, None) is None
