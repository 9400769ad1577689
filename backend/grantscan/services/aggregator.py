"""Fan out to the selected connectors, then merge, deduplicate and normalize programs."""
from __future__ import annotations

import asyncio
import logging
import re
import unicodedata
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from grantscan.config import SettingsProvider
from grantscan.models.company import CompanyProfile, FinancialYear
from grantscan.models.program import MERGEABLE_FIELDS, Program, is_empty
from grantscan.services.amounts import infer_expected_grant
from grantscan.services.connectors import (
    REGISTRY_SOURCE,
    SOURCE_PRIORITY,
    DartConnector,
    SourceConnector,
    SourceParams,
    summarize_financials,
    validate_endpoint_path,
)
from grantscan.services.regions import normalize_regions
from grantscan.services.resilience import (
    PipelineError,
    RetryPolicy,
    ValidationError,
    with_retry,
)
from grantscan.services.retrieval import ListingCache

logger = logging.getLogger(__name__)

INTERNAL_DEADLINE_DAYS = 7

_DATE_PATTERN = re.compile(r"(\d{4})\s*[-./년]?\s*(\d{1,2})\s*[-./월]?\s*(\d{1,2})")


@dataclass
class SourceSelection:
    """Connectors to call, plus per-connector pagination/endpoint overrides."""
    sources: List[str] = field(default_factory=list)
    params: Dict[str, SourceParams] = field(default_factory=dict)
    financial_years: int = 5

    def params_for(self, name: str) -> SourceParams:
        return self.params.get(name) or SourceParams()


@dataclass
class SourceFailure:
    source: str
    kind: str
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "kind": self.kind, "message": self.message}


@dataclass
class AggregationResult:
    programs: List[Program] = field(default_factory=list)
    failures: List[SourceFailure] = field(default_factory=list)
    financials: List[FinancialYear] = field(default_factory=list)
    company: Optional[CompanyProfile] = None
    listing_sources: List[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        """Every selected listing source failed, so there is nothing to score."""
        if not self.listing_sources:
            return False
        failed = {failure.source for failure in self.failures}
        return all(source in failed for source in self.listing_sources)


def _normalize_token(value: Optional[str]) -> str:
    text = unicodedata.normalize("NFKC", str(value or "")).lower()
    return re.sub(r"[\s\W_]+", "", text)


def normalize_date(value: Optional[str]) -> Optional[str]:
    """'20250131', '2025.01.31', '2025년 1월 31일' and similar to ISO 'YYYY-MM-DD'."""
    if not value:
        return None
    text = str(value).strip()
    match = _DATE_PATTERN.search(text)
    if not match:
        return text or None
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return text


def dedup_key(program: Program) -> Tuple[str, str, str]:
    return (
        _normalize_token(program.program_name),
        _normalize_token(program.organizer),
        normalize_date(program.official_end_date) or "",
    )


def internal_deadline(official_end_date: Optional[str]) -> Optional[str]:
    iso = normalize_date(official_end_date)
    if not iso:
        return None
    try:
        end = date.fromisoformat(iso)
    except ValueError:
        return None
    return (end - timedelta(days=INTERNAL_DEADLINE_DAYS)).isoformat()


def _priority(source: Optional[str]) -> int:
    try:
        return SOURCE_PRIORITY.index(source or "")
    except ValueError:
        return len(SOURCE_PRIORITY)


def merge_programs(programs: Sequence[Program]) -> List[Program]:
    """Collapse records sharing a dedup key.

    Output order is the first-seen order of each key. Field values are taken
    from the first non-empty variant, with variants ordered by connector
    priority and then, within a connector, by how many fields they populate.
    """
    groups: Dict[Tuple[str, str, str], List[Tuple[int, Program]]] = {}
    for index, program in enumerate(programs):
        groups.setdefault(dedup_key(program), []).append((index, program))

    merged: List[Program] = []
    for variants in groups.values():
        ordered = [
            program
            for _, program in sorted(
                variants,
                key=lambda item: (_priority(item[1].source), -item[1].populated_field_count(), item[0]),
            )
        ]
        first_seen = variants[0][1]
        base = ordered[0]
        values: Dict[str, Any] = {}
        for name in MERGEABLE_FIELDS:
            for variant in ordered:
                value = getattr(variant, name)
                if not is_empty(value):
                    values[name] = value
                    break
        sources: List[str] = []
        for variant in ordered:
            for source in variant.sources or ([variant.source] if variant.source else []):
                if source not in sources:
                    sources.append(source)
        merged.append(
            replace(
                base,
                program_name=first_seen.program_name,
                source=base.source,
                sources=sources,
                **{name: values.get(name) for name in MERGEABLE_FIELDS},
            )
        )
    return merged


def normalize_program(program: Program) -> Program:
    """Date, region and amount normalization, applied once per merged record."""
    end_date = normalize_date(program.official_end_date)
    expected_grant = program.expected_grant
    if not expected_grant:
        expected_grant = infer_expected_grant(program.support_details, program.total_budget, program.description)
    return replace(
        program,
        official_end_date=end_date,
        internal_deadline=program.internal_deadline or internal_deadline(end_date),
        regions=normalize_regions(program.regions),
        expected_grant=expected_grant,
    )


def enrich_company(company: CompanyProfile, financials: List[FinancialYear]) -> CompanyProfile:
    """Copy of the profile with registry financials taking priority."""
    if not financials:
        return company
    latest = next((row for row in reversed(financials) if row.revenue), None)
    return replace(
        company,
        revenue=latest.revenue if latest else company.revenue,
        financial_trend=summarize_financials(financials) or company.financial_trend,
    )


def _program_from_cache(payload: Dict[str, Any]) -> Program:
    return Program(**payload)


def _program_to_cache(program: Program) -> Dict[str, Any]:
    return {name: getattr(program, name) for name in ("program_name", "source", "sources", *MERGEABLE_FIELDS)}


class Aggregator:
    def __init__(
        self,
        settings: SettingsProvider,
        connectors: Dict[str, SourceConnector],
        cache: Optional[ListingCache] = None,
    ) -> None:
        self._settings = settings
        self._connectors = connectors
        self._cache = cache

    def _selected(self, selection: SourceSelection) -> List[str]:
        names = [str(name).strip() for name in selection.sources if str(name).strip()]
        if not names:
            raise ValidationError("At least one source must be selected")
        unknown = [name for name in names if name not in self._connectors]
        if unknown:
            raise ValidationError(f"Unknown source(s): {', '.join(sorted(unknown))}")
        for name in names:
            endpoint_path = selection.params_for(name).endpoint_path
            if endpoint_path is not None:
                validate_endpoint_path(endpoint_path)
        # Dedup while keeping priority order so merge precedence never depends on request order.
        return sorted(dict.fromkeys(names), key=_priority)

    async def _fetch_listing(self, connector: SourceConnector, params: SourceParams) -> List[Program]:
        connector.require_credential()
        if self._cache is None:
            return await connector.fetch(params)
        key = connector.cache_key(params)
        cached = await self._cache.get_json(connector.name, key)
        if isinstance(cached, list):
            logger.info("Listing cache hit for %s (%d programs)", connector.name, len(cached))
            return [_program_from_cache(item) for item in cached]
        programs = await connector.fetch(params)
        await self._cache.set_json(connector.name, key, [_program_to_cache(p) for p in programs])
        return programs

    async def _call(self, name: str, company: CompanyProfile, selection: SourceSelection, policy: RetryPolicy):
        connector = self._connectors[name]
        if name == REGISTRY_SOURCE and isinstance(connector, DartConnector):
            operation = lambda: connector.lookup_financials(company.name, selection.financial_years)
        else:
            params = selection.params_for(name)
            operation = lambda: self._fetch_listing(connector, params)
        return await with_retry(operation, policy=policy, label=f"connector:{name}", source=name)

    async def aggregate(self, company: CompanyProfile, selection: SourceSelection) -> AggregationResult:
        names = self._selected(selection)
        policy = RetryPolicy.from_settings(self._settings.current())
        outcomes = await asyncio.gather(
            *(self._call(name, company, selection, policy) for name in names),
            return_exceptions=True,
        )

        result = AggregationResult(
            company=company,
            listing_sources=[name for name in names if name != REGISTRY_SOURCE],
        )
        collected: List[Program] = []
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, PipelineError):
                logger.warning("Source %s failed (%s): %s", name, outcome.kind.value, outcome)
                result.failures.append(SourceFailure(name, outcome.kind.value, outcome.user_message()))
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            if name == REGISTRY_SOURCE:
                result.financials = list(outcome)
                continue
            for program in outcome:
                if program.source is None:
                    program = replace(program, source=name)
                if not program.sources:
                    program = replace(program, sources=[name])
                collected.append(program)

        result.programs = [normalize_program(program) for program in merge_programs(collected)]
        result.company = enrich_company(company, result.financials)
        logger.info(
            "Aggregated %d programs from %d record(s); %d source failure(s)",
            len(result.programs),
            len(collected),
            len(result.failures),
        )
        return result
