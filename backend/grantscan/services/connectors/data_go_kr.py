"""data.go.kr grant listings: MSS business notices (XML) and K-Startup announcements (JSON)."""
from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from grantscan.models.program import Program
from grantscan.services.connectors.base import SourceConnector, SourceParams, clean_text, positive_int
from grantscan.services.resilience import AuthError, QuotaExceeded, UpstreamError

MSS_BIZ_URL = "https://apis.data.go.kr/1421000/mssBizService_v2/getbizList_v2"
KSTARTUP_URL = "https://apis.data.go.kr/B552735/kisedKstartupService01/getAnnouncementInformation01"

MSS_ORGANIZER = "중소벤처기업부"

# data.go.kr reports gateway errors in an XML body with HTTP 200.
_GATEWAY_AUTH_CODES = ("SERVICE_KEY_IS_NOT_REGISTERED_ERROR", "SERVICE_ACCESS_DENIED_ERROR")
_GATEWAY_QUOTA_CODES = ("LIMITED_NUMBER_OF_SERVICE_REQUESTS_EXCEEDS_ERROR",)


def _check_gateway_error(body: str, connector: SourceConnector) -> None:
    if "returnAuthMsg" not in body and "cmmMsgHeader" not in body:
        return
    if any(code in body for code in _GATEWAY_QUOTA_CODES):
        raise QuotaExceeded(f"{connector.label} daily request limit exceeded", source=connector.name)
    if any(code in body for code in _GATEWAY_AUTH_CODES):
        raise AuthError(f"{connector.label} rejected the service key", source=connector.name)
    raise UpstreamError(f"{connector.label} gateway error", source=connector.name)


class MssBizConnector(SourceConnector):
    name = "mss_biz"
    label = "MSS business notices"
    credential_field = "data_go_kr_api_key"

    async def fetch_raw(self, params: SourceParams) -> str:
        """XML body unparsed, for the proxy route."""
        key = self.credential()
        query = {
            "serviceKey": key,
            "numOfRows": positive_int(params.per_page, 200),
            "pageNo": positive_int(params.page, 1),
        }
        resp = await self._request(MSS_BIZ_URL, query, headers={"Accept": "application/xml"})
        return resp.text

    async def fetch(self, params: SourceParams) -> List[Program]:
        body = await self.fetch_raw(params)
        _check_gateway_error(body, self)
        return self.parse(body)

    def parse(self, body: str) -> List[Program]:
        try:
            root = ET.fromstring(body)
        except ET.ParseError as exc:
            raise UpstreamError(f"{self.label} returned malformed XML", source=self.name) from exc

        programs: List[Program] = []
        for item in root.iter("item"):
            name = _item_text(item, "title")
            if not name:
                continue
            programs.append(
                Program(
                    program_name=name,
                    organizer=MSS_ORGANIZER,
                    source=self.name,
                    source_id=_item_text(item, "itemId"),
                    detail_url=_item_text(item, "viewUrl"),
                    description=_item_text(item, "dataContents"),
                    official_end_date=_item_text(item, "applicationEndDate"),
                    sources=[self.name],
                )
            )
        return programs


class KStartupConnector(SourceConnector):
    name = "kstartup"
    label = "K-Startup"
    credential_field = "data_go_kr_api_key"

    async def fetch_raw(self, params: SourceParams) -> Any:
        key = self.credential()
        query = {
            "serviceKey": key,
            "page": positive_int(params.page, 1),
            "perPage": positive_int(params.per_page, 200),
            "returnType": "json",
        }
        resp = await self._request(KSTARTUP_URL, query)
        _check_gateway_error(resp.text[:2000], self)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.label} returned non-JSON payload", source=self.name) from exc

    async def fetch(self, params: SourceParams) -> List[Program]:
        payload = await self.fetch_raw(params)
        return [program for program in (self._to_program(item) for item in self._items(payload)) if program]

    @staticmethod
    def _items(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        data = payload.get("data")
        if isinstance(data, dict):
            data = data.get("data")
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    def _to_program(self, item: Dict[str, Any]) -> Optional[Program]:
        name = clean_text(item.get("biz_pbanc_nm")) or clean_text(item.get("intg_pbanc_biz_nm"))
        if not name:
            return None
        return Program(
            program_name=name,
            organizer=clean_text(item.get("sprv_inst")) or clean_text(item.get("pbanc_ntrp_nm")),
            source=self.name,
            source_id=clean_text(item.get("pbanc_sn")),
            detail_url=clean_text(item.get("detl_pg_url")) or clean_text(item.get("biz_gdnc_url")),
            support_type=clean_text(item.get("supt_biz_clsfc")),
            description=clean_text(item.get("pbanc_ctnt")),
            official_end_date=clean_text(item.get("pbanc_rcpt_end_dt")),
            target_audience=clean_text(item.get("aply_trgt_ctnt")),
            regions=_split_regions(item.get("supt_regin")),
            sources=[self.name],
        )


def _item_text(item: ET.Element, tag: str) -> Optional[str]:
    node = item.find(tag)
    return clean_text(node.text) if node is not None else None


def _split_regions(value: Any) -> Optional[List[str]]:
    text = clean_text(value)
    if not text:
        return None
    return [token.strip() for token in text.replace("/", ",").split(",") if token.strip()]
