"""Proxy routes for the individual source connectors."""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from grantscan.api.deps import get_connectors
from grantscan.config import SettingsProvider, get_settings_provider
from grantscan.services.connectors import SourceConnector, SourceParams, summarize_financials
from grantscan.services.connectors.dart import DEFAULT_YEARS, clamp_years
from grantscan.services.resilience import RetryPolicy, with_retry

router = APIRouter()


def _policy(settings: SettingsProvider) -> RetryPolicy:
    return RetryPolicy.from_settings(settings.current())


@router.get("/odcloud/programs")
async def odcloud_programs(
    page: Optional[int] = Query(None),
    per_page: Optional[int] = Query(None, alias="perPage"),
    endpoint_path: Optional[str] = Query(None, alias="endpointPath"),
    connectors: Dict[str, SourceConnector] = Depends(get_connectors),
    settings: SettingsProvider = Depends(get_settings_provider),
):
    connector = connectors["odcloud"]
    params = SourceParams(page=page, per_page=per_page, endpoint_path=endpoint_path)
    return await with_retry(
        lambda: connector.fetch_raw(params),
        policy=_policy(settings),
        label="proxy:odcloud",
        source=connector.name,
    )


@router.get("/data-go/mss-biz")
async def mss_biz_notices(
    num_of_rows: Optional[int] = Query(None, alias="numOfRows"),
    page_no: Optional[int] = Query(None, alias="pageNo"),
    connectors: Dict[str, SourceConnector] = Depends(get_connectors),
    settings: SettingsProvider = Depends(get_settings_provider),
):
    connector = connectors["mss_biz"]
    params = SourceParams(page=page_no, per_page=num_of_rows)
    body = await with_retry(
        lambda: connector.fetch_raw(params),
        policy=_policy(settings),
        label="proxy:mss_biz",
        source=connector.name,
    )
    return Response(content=body, media_type="application/xml")


@router.get("/data-go/kstartup")
async def kstartup_announcements(
    page: Optional[int] = Query(None),
    per_page: Optional[int] = Query(None, alias="perPage"),
    connectors: Dict[str, SourceConnector] = Depends(get_connectors),
    settings: SettingsProvider = Depends(get_settings_provider),
):
    connector = connectors["kstartup"]
    params = SourceParams(page=page, per_page=per_page)
    return await with_retry(
        lambda: connector.fetch_raw(params),
        policy=_policy(settings),
        label="proxy:kstartup",
        source=connector.name,
    )


@router.get("/dart/company")
async def dart_company(
    corp_code: str = Query(...),
    connectors: Dict[str, SourceConnector] = Depends(get_connectors),
    settings: SettingsProvider = Depends(get_settings_provider),
):
    connector = connectors["dart"]
    return await with_retry(
        lambda: connector.fetch_company(corp_code),
        policy=_policy(settings),
        label="proxy:dart_company",
        source=connector.name,
    )


@router.get("/dart/financials")
async def dart_financials(
    company_name: str = Query(..., alias="companyName", min_length=1),
    years: int = Query(DEFAULT_YEARS),
    connectors: Dict[str, SourceConnector] = Depends(get_connectors),
    settings: SettingsProvider = Depends(get_settings_provider),
):
    connector = connectors["dart"]
    policy = _policy(settings)
    corp_code = await with_retry(
        lambda: connector.find_corp_code(company_name),
        policy=policy,
        label="proxy:dart_lookup",
        source=connector.name,
    )
    if not corp_code:
        raise HTTPException(status_code=404, detail=f"No registry entry for {company_name!r}")
    span = clamp_years(years)
    rows = await with_retry(
        lambda: connector.fetch_financial_statements(corp_code, span),
        policy=policy,
        label="proxy:dart_financials",
        source=connector.name,
    )
    return {
        "companyName": company_name,
        "corpCode": corp_code,
        "years": span,
        "financials": [row.as_dict() for row in rows],
        "summary": summarize_financials(rows),
    }
