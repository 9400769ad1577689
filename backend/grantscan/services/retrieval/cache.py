from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from grantscan.config import SettingsProvider

logger = logging.getLogger(__name__)


class ListingCache:
    """Best-effort Redis cache for raw connector listings.

    Disabled when ``redis_url`` is empty. Cache failures never fail a scan.
    """

    def __init__(self, settings: SettingsProvider, client: Optional[Any] = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self._settings.current().redis_url)

    def _redis(self) -> Optional[Any]:
        if self._client is not None:
            return self._client
        url = self._settings.current().redis_url
        if not url:
            return None
        self._client = redis.Redis.from_url(url, decode_responses=True)
        return self._client

    @staticmethod
    def _key(namespace: str, payload: str) -> str:
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return f"listings:{namespace}:{digest}"

    async def get_json(self, namespace: str, payload: str) -> Optional[Any]:
        client = self._redis()
        if client is None:
            return None
        key = self._key(namespace, payload)
        try:
            raw = await client.get(key)
            if not raw:
                return None
            return json.loads(raw)
        except Exception as exc:
            logger.warning("Listing cache read failed for %s: %s", namespace, exc)
            return None

    async def set_json(self, namespace: str, payload: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        client = self._redis()
        if client is None:
            return
        ttl = ttl_seconds if ttl_seconds is not None else self._settings.current().listing_cache_ttl_seconds
        key = self._key(namespace, payload)
        try:
            await client.setex(key, max(1, int(ttl)), json.dumps(value, ensure_ascii=False))
        except Exception as exc:
            logger.warning("Listing cache write failed for %s: %s", namespace, exc)
