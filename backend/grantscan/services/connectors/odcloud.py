"""ODCloud open-data connector (Incheon bizOK support program dataset)."""
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from grantscan.models.program import Program
from grantscan.services.connectors.base import (
    SourceConnector,
    SourceParams,
    clean_text,
    positive_int,
    validate_endpoint_path,
)
from grantscan.services.resilience import UpstreamError

ODCLOUD_BASE = "https://api.odcloud.kr/api"
DEFAULT_PAGE = 1
DEFAULT_PER_PAGE = 500

# Dataset columns vary between releases; first present key wins.
NAME_KEYS = ("지원사업명", "사업명")
ORGANIZER_KEYS = ("주관기관", "주관기관명")
SUPPORT_TYPE_KEYS = ("지원분야", "사업분야")
END_DATE_KEYS = ("신청종료일", "접수마감일", "마감일")
DESCRIPTION_KEYS = ("사업개요", "사업내용", "지원내용")
TARGET_KEYS = ("지원대상", "신청대상")
URL_KEYS = ("상세URL", "상세페이지", "URL")
ID_KEYS = ("번호", "사업번호")


def _first(record: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = clean_text(record.get(key))
        if value:
            return value
    return None


class OdcloudConnector(SourceConnector):
    name = "odcloud"
    label = "ODCloud"
    credential_field = "odcloud_api_key"

    def _url_and_params(self, params: SourceParams) -> tuple[str, Dict[str, Any]]:
        settings = self._settings.current()
        endpoint_path = validate_endpoint_path(params.endpoint_path or settings.odcloud_endpoint_path)
        key = self.credential()
        query = {
            "page": positive_int(params.page, DEFAULT_PAGE),
            "perPage": positive_int(params.per_page, DEFAULT_PER_PAGE),
            "serviceKey": key,
        }
        return f"{ODCLOUD_BASE}{endpoint_path}", query

    def cache_key(self, params: SourceParams) -> str:
        # Key on the dataset actually queried, including the configured default.
        settings = self._settings.current()
        endpoint_path = validate_endpoint_path(params.endpoint_path or settings.odcloud_endpoint_path)
        return replace(params, endpoint_path=endpoint_path).cache_key()

    async def fetch_raw(self, params: SourceParams) -> Any:
        """Provider payload as-is, for the proxy route."""
        url, query = self._url_and_params(params)
        return await self._get_json(url, query)

    async def fetch(self, params: SourceParams) -> List[Program]:
        payload = await self.fetch_raw(params)
        if not isinstance(payload, dict):
            raise UpstreamError("ODCloud payload is not an object", source=self.name)
        records = payload.get("data") or []
        if not isinstance(records, list):
            raise UpstreamError("ODCloud payload has no data list", source=self.name)
        return [program for program in (self._to_program(r) for r in records if isinstance(r, dict)) if program]

    def _to_program(self, record: Dict[str, Any]) -> Optional[Program]:
        name = _first(record, NAME_KEYS)
        if not name:
            return None
        return Program(
            program_name=name,
            organizer=_first(record, ORGANIZER_KEYS),
            source=self.name,
            source_id=_first(record, ID_KEYS),
            detail_url=_first(record, URL_KEYS),
            support_type=_first(record, SUPPORT_TYPE_KEYS),
            description=_first(record, DESCRIPTION_KEYS),
            official_end_date=_first(record, END_DATE_KEYS),
            target_audience=_first(record, TARGET_KEYS),
            regions=["인천"],
            sources=[self.name],
        )
