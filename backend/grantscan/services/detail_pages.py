"""Detail-page enrichment: read each program's announcement page and fill listing gaps.

Listings rarely carry more than a title, an organizer and a deadline. The
announcement page usually spells out eligibility, exclusions and evaluation
criteria, which is what fit scoring needs most. One reasoning call turns the
page text into those fields; values already present on the merged record win.
"""
from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import httpx
from selectolax.parser import HTMLParser

from grantscan.config import Settings, SettingsProvider
from grantscan.models.job import ProgramFailure
from grantscan.models.program import Program, is_empty
from grantscan.services.aggregator import normalize_program
from grantscan.services.connectors.base import clean_text
from grantscan.services.fit_scoring import clean_and_parse_json
from grantscan.services.llm import LLMRequest, LLMStage, ReasoningOrchestrator
from grantscan.services.resilience import (
    InvalidCredential,
    PipelineError,
    QuotaExceeded,
    RetryPolicy,
    UpstreamError,
    ValidationError,
    truncate_detail,
    with_retry,
)
from grantscan.services.retrieval import ListingCache

logger = logging.getLogger(__name__)

DETAIL_SOURCE = "detail_page"
PAGE_TEXT_LIMIT = 15000
MIN_PAGE_TEXT = 100
NOISE_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside")

# Several ministry portals refuse requests without a browser-like agent.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "ko-KR,ko;q=0.9,en;q=0.8",
}

# reply key -> Program field
DETAIL_LIST_FIELDS: Dict[str, str] = {
    "eligibilityCriteria": "eligibility_criteria",
    "exclusionCriteria": "exclusion_criteria",
    "evaluationCriteria": "evaluation_criteria",
    "requiredDocuments": "required_documents",
    "selectionProcess": "selection_process",
    "keywords": "keywords",
    "categories": "categories",
    "regions": "regions",
}
DETAIL_TEXT_FIELDS: Dict[str, str] = {
    "department": "department",
    "objectives": "objectives",
    "targetAudience": "target_audience",
    "supportScale": "support_details",
    "totalBudget": "total_budget",
    "projectPeriod": "project_period",
    "description": "description",
}

_STRING_LIST = {"type": "ARRAY", "items": {"type": "STRING"}}

DETAIL_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        **{key: _STRING_LIST for key in DETAIL_LIST_FIELDS},
        **{key: {"type": "STRING"} for key in DETAIL_TEXT_FIELDS},
        "applicationPeriod": {
            "type": "OBJECT",
            "properties": {"start": {"type": "STRING"}, "end": {"type": "STRING"}},
        },
    },
}

DETAIL_REQUEST_CONFIG: Dict[str, Any] = {
    "response_mime_type": "application/json",
    "response_schema": DETAIL_RESPONSE_SCHEMA,
    "temperature": 0,
}


def validate_detail_url(url: Optional[str]) -> str:
    value = str(url or "").strip()
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(f"Detail URL not fetchable: {truncate_detail(value, 80)}", source=DETAIL_SOURCE)
    return value


def extract_page_text(html: str, limit: int = PAGE_TEXT_LIMIT) -> str:
    """Visible text of an announcement page, without navigation chrome, whitespace collapsed."""
    if not html:
        return ""
    tree = HTMLParser(html)
    for tag in NOISE_TAGS:
        for node in tree.css(tag):
            node.decompose()
    root = tree.body if tree.body is not None else tree.root
    if root is None:
        return ""
    text = re.sub(r"\s+", " ", root.text(separator=" ")).strip()
    return text[:limit]


def build_detail_prompt(program_name: str, page_text: str) -> str:
    lines = [
        "다음은 정부 지원사업 공고 페이지의 본문입니다.",
        f"- 사업명: {program_name}",
        "",
        "## 본문",
        page_text,
        "",
        "## 요청사항",
        "본문에 명시된 내용만 추출하여 JSON으로 출력하세요. 본문에 없는 항목은 생략하세요.",
        "eligibilityCriteria(자격 요건), exclusionCriteria(제외 대상), evaluationCriteria(평가 기준),"
        " requiredDocuments(제출 서류), selectionProcess(선정 절차), keywords, categories, regions는 문자열 배열입니다.",
        "department(담당 부서), objectives(사업 목적), targetAudience(지원 대상), supportScale(기업당 지원 규모),"
        " totalBudget(총 예산), projectPeriod(사업 기간), description(사업 개요)은 문자열입니다.",
        "applicationPeriod는 start, end(YYYY-MM-DD) 문자열을 가진 객체입니다.",
    ]
    return "\n".join(lines)


def parse_detail_response(text: str) -> Dict[str, Any]:
    """Program field name -> extracted value. Absent or blank keys are left out."""
    data = clean_and_parse_json(text)
    if not isinstance(data, dict):
        raise UpstreamError("Detail extraction reply is not a JSON object", source=DETAIL_SOURCE)

    details: Dict[str, Any] = {}
    for key, field_name in DETAIL_LIST_FIELDS.items():
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, list):
            raise UpstreamError(f"Detail field {key} is not a list", source=DETAIL_SOURCE)
        items = [item for item in (clean_text(v) for v in value if isinstance(v, (str, int, float))) if item]
        if items:
            details[field_name] = items
    for key, field_name in DETAIL_TEXT_FIELDS.items():
        value = data.get(key)
        if isinstance(value, (str, int, float)) and not isinstance(value, bool) and clean_text(value):
            details[field_name] = clean_text(value)

    period = data.get("applicationPeriod")
    if isinstance(period, dict) and clean_text(period.get("end")):
        details["official_end_date"] = clean_text(period.get("end"))
    return details


def merge_details(program: Program, details: Dict[str, Any]) -> Program:
    filled = {name: value for name, value in details.items() if is_empty(getattr(program, name))}
    if not filled:
        return program
    return normalize_program(replace(program, **filled))


class DetailEnricher:
    def __init__(
        self,
        settings: SettingsProvider,
        orchestrator: Optional[ReasoningOrchestrator] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[ListingCache] = None,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator or ReasoningOrchestrator(settings)
        self._client = client
        self._cache = cache

    @asynccontextmanager
    async def _http(self, settings: Settings) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=settings.connector_timeout_seconds) as client:
            yield client

    async def _fetch_html(self, url: str) -> str:
        settings = self._settings.current()
        try:
            async with self._http(settings) as client:
                resp = await client.get(
                    url,
                    headers=BROWSER_HEADERS,
                    timeout=settings.connector_timeout_seconds,
                    follow_redirects=True,
                )
        except httpx.TimeoutException as exc:
            raise UpstreamError("Detail page request timed out", source=DETAIL_SOURCE) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Detail page request failed: {exc}", source=DETAIL_SOURCE) from exc

        if resp.status_code == 429:
            raise QuotaExceeded("Rate limited by detail page host (HTTP 429)", source=DETAIL_SOURCE)
        if resp.status_code >= 400:
            raise UpstreamError(f"Detail page returned HTTP {resp.status_code}", source=DETAIL_SOURCE)
        return resp.text

    async def page_text(self, url: Optional[str]) -> str:
        target = validate_detail_url(url)
        if self._cache is not None:
            cached = await self._cache.get_json(DETAIL_SOURCE, target)
            if isinstance(cached, str):
                return cached

        settings = self._settings.current()
        html = await with_retry(
            lambda: self._fetch_html(target),
            policy=RetryPolicy.from_settings(settings),
            label=DETAIL_SOURCE,
            source=DETAIL_SOURCE,
        )
        text = extract_page_text(html)
        if self._cache is not None and text:
            await self._cache.set_json(DETAIL_SOURCE, target, text, ttl_seconds=settings.detail_cache_ttl_seconds)
        return text

    async def enrich(self, program: Program) -> Program:
        text = await self.page_text(program.detail_url)
        if len(text) < MIN_PAGE_TEXT:
            logger.info("Detail page for %r too short to extract (%d chars)", program.program_name, len(text))
            return program

        request = LLMRequest(
            stage=LLMStage.detail_extraction,
            contents=build_detail_prompt(program.program_name, text),
            config=dict(DETAIL_REQUEST_CONFIG),
            metadata={"program": program.program_name, "url": program.detail_url},
        )
        _, details = await self._orchestrator.run(request, parse=lambda r: parse_detail_response(r.text))
        enriched = merge_details(program, details)
        logger.info(
            "Enriched %r from its detail page: %d field(s) extracted",
            program.program_name,
            len(details),
        )
        return enriched

    async def enrich_all(
        self,
        programs: Sequence[Program],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Tuple[List[Program], List[ProgramFailure]]:
        """Enrich every program that has a detail URL, keeping order.

        A failed page keeps its listing record and is reported in the failure
        list. A rejected reasoning key stops the remaining pages and is raised.
        """
        settings = self._settings.current()
        if not settings.detail_enrichment_enabled:
            return list(programs), []

        semaphore = asyncio.Semaphore(max(1, int(settings.detail_concurrency)))
        failures: List[ProgramFailure] = []
        rejected: List[InvalidCredential] = []

        async def enrich_one(program: Program) -> Program:
            if not program.detail_url:
                return program
            async with semaphore:
                if rejected or (should_stop is not None and should_stop()):
                    return program
                try:
                    return await self.enrich(program)
                except InvalidCredential as exc:
                    rejected.append(exc)
                except PipelineError as exc:
                    logger.warning(
                        "Detail page for %r failed (%s): %s", program.program_name, exc.kind.value, exc
                    )
                    failures.append(ProgramFailure(program.program_name, exc.kind.value, exc.user_message()))
                return program

        enriched = await asyncio.gather(*(enrich_one(program) for program in programs))
        if rejected:
            raise rejected[0]
        return list(enriched), failures
