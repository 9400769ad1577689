"""Parse Korean grant amount phrases ("최대 3억원", "1~3억원") into won."""
from __future__ import annotations

import re
from typing import Optional

UNIT_MULTIPLIERS = {
    "억": 100_000_000,
    "천만": 10_000_000,
    "백만": 1_000_000,
    "만": 10_000,
}

# Per-company amounts above this are treated as a total program budget.
PER_COMPANY_CEILING = 5_000_000_000
MIN_GRANT = 1_000_000

_NON_NUMERIC_PREFIX = re.compile(r"^(별도|공고|추후|예산|미정|해당|없음|명시|정보|사전진단|-)")
_NON_MONETARY_PREFIX = re.compile(r"^(무료|무상임대|컨설팅|멘토링|교육|입주|네트워킹)")
_PERCENT_ONLY = re.compile(r"^\D*\d+\s*%")
_WON_UNIT = re.compile(r"[만억천백]\s*원")
_RANGE = re.compile(r"(\d+(?:\.\d+)?)[~\-–](\d+(?:\.\d+)?)(억|천만|백만|만)?원?")
_UNIT = re.compile(r"(\d+(?:\.\d+)?)(억|천만|백만|만)원?")
_PLAIN_WON = re.compile(r"(\d+)원")

_PER_COMPANY_PATTERNS = (
    re.compile(r"(?:기업당|업체당|팀당|1개사당|개사당|과제당)[^0-9]{0,20}(?:최대\s*)?(\d+(?:[.,]\d+)?)\s*(억|천만|백만|만)\s*원"),
    re.compile(r"(?:최대|한도)\s*(\d+(?:[.,]\d+)?)\s*(억|천만|백만|만)\s*원"),
    re.compile(r"(\d+(?:[.,]\d+)?)\s*(억|천만|백만|만)\s*원\s*(?:이내|한도|내외|지원|까지)"),
)
_MILLIONS_ONLY = re.compile(r"(\d+)\s*백만\s*원")


def apply_unit(number: float, unit: Optional[str]) -> int:
    if not number:
        return 0
    return int(round(number * UNIT_MULTIPLIERS.get(unit or "", 1)))


def parse_amount_from_scale(raw: Optional[str]) -> int:
    """Parse a support-scale field. Returns 0 when no monetary amount is present."""
    if not raw:
        return 0
    text = str(raw).strip()
    if _NON_NUMERIC_PREFIX.match(text) or _NON_MONETARY_PREFIX.match(text):
        return 0
    if _PERCENT_ONLY.match(text) and not _WON_UNIT.search(text):
        return 0

    cleaned = re.sub(r"[,\s]", "", text)

    # Ranges resolve to the upper bound
    match = _RANGE.search(cleaned)
    if match:
        return apply_unit(float(match.group(2)), match.group(3))

    match = _UNIT.search(cleaned)
    if match:
        return apply_unit(float(match.group(1)), match.group(2))

    match = _PLAIN_WON.search(cleaned)
    if match and int(match.group(1)) >= 100_000:
        return int(match.group(1))
    return 0


def extract_grant_from_text(text: Optional[str]) -> int:
    """Find the per-company grant in free text; the smallest plausible match wins."""
    if not text or len(text) < 4:
        return 0
    for pattern in _PER_COMPANY_PATTERNS:
        amounts = []
        for match in pattern.finditer(text):
            amount = apply_unit(float(match.group(1).replace(",", "")), match.group(2))
            if 0 < amount <= PER_COMPANY_CEILING:
                amounts.append(amount)
        if amounts and min(amounts) >= MIN_GRANT:
            return min(amounts)

    match = _MILLIONS_ONLY.search(text)
    if match:
        return int(match.group(1)) * 1_000_000
    return 0


def infer_expected_grant(
    support_details: Optional[str] = None,
    total_budget: Optional[str] = None,
    description: Optional[str] = None,
) -> Optional[int]:
    for value in (parse_amount_from_scale(support_details), parse_amount_from_scale(total_budget)):
        if value >= MIN_GRANT:
            return value
    from_text = extract_grant_from_text(description)
    return from_text or None
