"""OpenDART company-registry connector: corp-code lookup and yearly financial statements."""
from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from grantscan.models.company import FinancialYear
from grantscan.models.program import Program
from grantscan.services.connectors.base import SourceConnector, SourceParams, clean_text
from grantscan.services.resilience import AuthError, QuotaExceeded, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

DART_BASE = "https://opendart.fss.or.kr/api"

STATUS_OK = "000"
STATUS_NO_DATA = "013"
STATUS_AUTH = {"010", "011", "012", "901"}
STATUS_QUOTA = "020"

BUSINESS_REPORT_CODE = "11011"
DEFAULT_YEARS = 5
MIN_YEARS = 1
MAX_YEARS = 10

ACCOUNT_MAPPING: Dict[str, str] = {
    "매출액": "revenue",
    "수익(매출액)": "revenue",
    "영업수익": "revenue",
    "영업이익": "operating_profit",
    "영업이익(손실)": "operating_profit",
    "당기순이익": "net_income",
    "당기순이익(손실)": "net_income",
    "연구개발비": "rnd_expense",
    "경상연구개발비": "rnd_expense",
    "연구개발비용": "rnd_expense",
    "급여": "personnel_expense",
    "종업원급여": "personnel_expense",
    "인건비": "personnel_expense",
    "자산총계": "total_assets",
    "자본총계": "total_equity",
}


def clamp_years(years: Optional[int]) -> int:
    try:
        value = int(years) if years is not None else DEFAULT_YEARS
    except (TypeError, ValueError):
        value = DEFAULT_YEARS
    return max(MIN_YEARS, min(MAX_YEARS, value))


def parse_amount(raw: Any) -> int:
    text = str(raw or "").replace(",", "").strip()
    if not text or text == "-":
        return 0
    try:
        return int(text)
    except ValueError:
        return 0


class DartConnector(SourceConnector):
    """Company registry. Contributes company financials rather than program records."""

    name = "dart"
    label = "OpenDART"
    credential_field = "dart_api_key"

    def _check_status(self, data: Dict[str, Any]) -> bool:
        """True when the payload carries data, False on 'no data'; raises on provider errors."""
        status = str(data.get("status") or "")
        if status == STATUS_OK:
            return True
        if status == STATUS_NO_DATA:
            return False
        message = clean_text(data.get("message")) or ""
        if status in STATUS_AUTH:
            raise AuthError(f"{self.label} rejected the API key ({status} {message})", source=self.name)
        if status == STATUS_QUOTA:
            raise QuotaExceeded(f"{self.label} request limit exceeded", source=self.name)
        raise UpstreamError(f"{self.label} status {status}: {message}", source=self.name)

    async def fetch_company(self, corp_code: str) -> Dict[str, Any]:
        corp_code = str(corp_code or "").strip()
        if not corp_code.isdigit() or len(corp_code) != 8:
            raise ValidationError("corp_code must be an 8-digit string")
        key = self.credential()
        data = await self._get_json(f"{DART_BASE}/company.json", {"crtfc_key": key, "corp_code": corp_code})
        if not isinstance(data, dict):
            raise UpstreamError(f"{self.label} payload is not an object", source=self.name)
        return data

    async def find_corp_code(self, company_name: str) -> Optional[str]:
        company_name = str(company_name or "").strip()
        if not company_name:
            raise ValidationError("company name is required for a registry lookup")
        key = self.credential()
        data = await self._get_json(
            f"{DART_BASE}/list.json",
            {"crtfc_key": key, "corp_name": company_name, "page_count": 5},
        )
        if not isinstance(data, dict) or not self._check_status(data):
            return None
        rows = [row for row in (data.get("list") or []) if isinstance(row, dict) and row.get("corp_code")]
        if not rows:
            return None
        for row in rows:
            if row.get("corp_name") == company_name:
                return str(row["corp_code"])
        return str(rows[0]["corp_code"])

    async def _fetch_year(self, corp_code: str, year: int, key: str) -> Optional[FinancialYear]:
        data = await self._get_json(
            f"{DART_BASE}/fnlttSinglAcnt.json",
            {
                "crtfc_key": key,
                "corp_code": corp_code,
                "bsns_year": str(year),
                "reprt_code": BUSINESS_REPORT_CODE,
            },
        )
        if not isinstance(data, dict) or not self._check_status(data):
            return None
        rows = data.get("list") or []
        if not rows:
            return None
        values: Dict[str, int] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            field_name = ACCOUNT_MAPPING.get(str(row.get("account_nm") or "").strip())
            if not field_name or values.get(field_name):
                continue
            amount = parse_amount(row.get("thstrm_amount"))
            if amount:
                values[field_name] = amount
        return FinancialYear(year=year, **values)

    async def fetch_financial_statements(
        self,
        corp_code: str,
        years: Optional[int] = DEFAULT_YEARS,
        *,
        today: Optional[date] = None,
    ) -> List[FinancialYear]:
        """Most recent ``years`` business reports, oldest first."""
        key = self.credential()
        span = clamp_years(years)
        current_year = (today or date.today()).year
        delay = max(0.0, float(self._settings.current().dart_request_delay_seconds))
        results: List[FinancialYear] = []
        for offset in range(1, span + 1):
            row = await self._fetch_year(corp_code, current_year - offset, key)
            if row:
                results.append(row)
            if offset < span and delay:
                await asyncio.sleep(delay)
        results.sort(key=lambda row: row.year)
        logger.info("%s financial statements: %d of %d years for %s", self.label, len(results), span, corp_code)
        return results

    async def lookup_financials(self, company_name: str, years: Optional[int] = DEFAULT_YEARS) -> List[FinancialYear]:
        corp_code = await self.find_corp_code(company_name)
        if not corp_code:
            return []
        return await self.fetch_financial_statements(corp_code, years)

    async def fetch(self, params: SourceParams) -> List[Program]:
        raise ValidationError(f"{self.label} is a company registry and has no program listings", source=self.name)


def summarize_financials(rows: List[FinancialYear]) -> Optional[str]:
    """One-line revenue trend, e.g. '2021: 12.0억 → 2023: 18.5억 (+54%)'."""
    with_revenue = [row for row in rows if row.revenue]
    if not with_revenue:
        return None
    first, last = with_revenue[0], with_revenue[-1]
    parts = [f"{row.year}: {row.revenue / 100_000_000:.1f}억" for row in with_revenue]
    summary = " → ".join(parts)
    if first.year != last.year and first.revenue > 0:
        change = (last.revenue - first.revenue) / first.revenue * 100
        summary += f" ({change:+.0f}%)"
    rnd = [row.rnd_expense for row in with_revenue if row.rnd_expense]
    if rnd:
        summary += f"; R&D {rnd[-1] / 100_000_000:.1f}억"
    return f"Revenue {summary}"
