from typing import Dict, Optional

import httpx

from grantscan.config import SettingsProvider
from grantscan.services.connectors.base import SourceConnector, SourceParams, validate_endpoint_path
from grantscan.services.connectors.dart import DartConnector, summarize_financials
from grantscan.services.connectors.data_go_kr import KStartupConnector, MssBizConnector
from grantscan.services.connectors.odcloud import OdcloudConnector

# Merge priority: the company registry first, then the listing sources.
SOURCE_PRIORITY = ("dart", "odcloud", "mss_biz", "kstartup")
LISTING_SOURCES = ("odcloud", "mss_biz", "kstartup")
REGISTRY_SOURCE = "dart"


def build_connectors(
    settings: SettingsProvider,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, SourceConnector]:
    connectors = (
        DartConnector(settings, client),
        OdcloudConnector(settings, client),
        MssBizConnector(settings, client),
        KStartupConnector(settings, client),
    )
    return {connector.name: connector for connector in connectors}


__all__ = [
    "SOURCE_PRIORITY", "LISTING_SOURCES", "REGISTRY_SOURCE", "build_connectors",
    "SourceConnector", "SourceParams", "validate_endpoint_path",
    "DartConnector", "KStartupConnector", "MssBizConnector", "OdcloudConnector",
    "summarize_financials",
]
