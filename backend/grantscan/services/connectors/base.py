"""Shared connector plumbing: credential checks, path allow-list, HTTP error mapping."""
from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from grantscan.config import Settings, SettingsProvider
from grantscan.models.program import Program
from grantscan.services.resilience import (
    AuthError,
    QuotaExceeded,
    UpstreamError,
    ValidationError,
    truncate_detail,
)

logger = logging.getLogger(__name__)

# Provider dataset paths look like /15049270/v1/uddi:6b5d729e-28f8-4404-afae-c3f46842ff11
ENDPOINT_PATH_PATTERN = re.compile(r"^/\d{1,12}/v\d{1,3}/uddi:[0-9A-Za-z-]{1,64}$")


@dataclass
class SourceParams:
    page: Optional[int] = None
    per_page: Optional[int] = None
    endpoint_path: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def cache_key(self) -> str:
        return json.dumps(
            {"page": self.page, "per_page": self.per_page, "endpoint_path": self.endpoint_path, "extra": self.extra},
            sort_keys=True,
            default=str,
        )


def validate_endpoint_path(path: str) -> str:
    value = str(path or "")
    if ".." in value or "//" in value or not ENDPOINT_PATH_PATTERN.match(value):
        raise ValidationError(f"Endpoint path not allowed: {truncate_detail(value, 80)}")
    return value


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def positive_int(value: Optional[int], default: int) -> int:
    try:
        number = int(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


class SourceConnector:
    """Base class for one external provider.

    Subclasses implement ``fetch``; they never retry (the aggregator wraps each
    call with the shared retry policy).
    """

    name: str = "source"
    label: str = "source"
    credential_field: str = ""

    def __init__(self, settings: SettingsProvider, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client

    def credential(self) -> str:
        settings = self._settings.current()
        key = str(getattr(settings, self.credential_field, "") or "").strip()
        if not key:
            raise AuthError(f"{self.credential_field.upper()} not configured", source=self.name)
        return key

    def require_credential(self) -> None:
        if self.credential_field:
            self.credential()

    def cache_key(self, params: SourceParams) -> str:
        return params.cache_key()

    @asynccontextmanager
    async def _http(self, settings: Settings) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=settings.connector_timeout_seconds) as client:
            yield client

    async def _request(
        self,
        url: str,
        params: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        settings = self._settings.current()
        try:
            async with self._http(settings) as client:
                resp = await client.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=settings.connector_timeout_seconds,
                )
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"{self.label} request timed out", source=self.name) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{self.label} request failed: {exc}", source=self.name) from exc

        if resp.status_code in (401, 403):
            raise AuthError(f"{self.label} rejected the credential (HTTP {resp.status_code})", source=self.name)
        if resp.status_code == 429:
            raise QuotaExceeded(f"Rate limited by {self.label} (HTTP 429)", source=self.name)
        if resp.status_code >= 400:
            raise UpstreamError(
                f"{self.label} error {resp.status_code}: {truncate_detail(resp.text)}",
                source=self.name,
            )
        return resp

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        resp = await self._request(url, params)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.label} returned non-JSON payload", source=self.name) from exc

    async def fetch(self, params: SourceParams) -> List[Program]:
        raise NotImplementedError
