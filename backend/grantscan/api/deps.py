"""Shared route dependencies: the token check, service singletons and error mapping."""
from __future__ import annotations

import hmac
from functools import lru_cache
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException

from grantscan.config import SettingsProvider, get_settings_provider
from grantscan.services.aggregator import Aggregator
from grantscan.services.connectors import SourceConnector, build_connectors
from grantscan.services.detail_pages import DetailEnricher
from grantscan.services.fit_scoring import FitScoringEngine
from grantscan.services.llm import ReasoningOrchestrator
from grantscan.services.resilience import ErrorKind, InvalidCredential, PipelineError
from grantscan.services.retrieval import ListingCache
from grantscan.services.scan_runner import JobRegistry, ScanRunner

HTTP_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.auth: 401,
    ErrorKind.validation: 400,
    ErrorKind.quota_exceeded: 429,
    ErrorKind.content_rejected: 400,
    ErrorKind.model_not_found: 400,
    ErrorKind.upstream: 502,
}


def http_status_for(exc: PipelineError) -> int:
    # A rejected reasoning key is a configuration problem on our side, not the caller's.
    if isinstance(exc, InvalidCredential):
        return 403
    return HTTP_STATUS_BY_KIND.get(exc.kind, 502)


def require_api_token(
    x_api_token: Optional[str] = Header(default=None),
    settings: SettingsProvider = Depends(get_settings_provider),
) -> None:
    expected = settings.current().api_access_token
    if not expected:
        return
    if not x_api_token or not hmac.compare_digest(x_api_token, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing x-api-token")


@lru_cache
def get_connectors() -> Dict[str, SourceConnector]:
    return build_connectors(get_settings_provider())


@lru_cache
def get_listing_cache() -> ListingCache:
    return ListingCache(get_settings_provider())


@lru_cache
def get_orchestrator() -> ReasoningOrchestrator:
    return ReasoningOrchestrator(get_settings_provider())


def get_aggregator(
    settings: SettingsProvider = Depends(get_settings_provider),
    connectors: Dict[str, SourceConnector] = Depends(get_connectors),
    cache: ListingCache = Depends(get_listing_cache),
) -> Aggregator:
    return Aggregator(settings, connectors, cache if cache.enabled else None)


def get_engine(
    settings: SettingsProvider = Depends(get_settings_provider),
    orchestrator: ReasoningOrchestrator = Depends(get_orchestrator),
) -> FitScoringEngine:
    return FitScoringEngine(settings, orchestrator)


def get_detail_enricher(
    settings: SettingsProvider = Depends(get_settings_provider),
    orchestrator: ReasoningOrchestrator = Depends(get_orchestrator),
    cache: ListingCache = Depends(get_listing_cache),
) -> DetailEnricher:
    return DetailEnricher(settings, orchestrator, cache=cache if cache.enabled else None)


def get_scan_runner(
    settings: SettingsProvider = Depends(get_settings_provider),
    aggregator: Aggregator = Depends(get_aggregator),
    engine: FitScoringEngine = Depends(get_engine),
    enricher: DetailEnricher = Depends(get_detail_enricher),
) -> ScanRunner:
    return ScanRunner(settings, aggregator, engine, enricher)


@lru_cache
def get_job_registry() -> JobRegistry:
    return JobRegistry()
