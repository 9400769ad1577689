import httpx

from grantscan.config import Settings, SettingsProvider
from grantscan.services.llm.types import LLMResponse

FAST_RETRY = {
    "retry_max_attempts": 3,
    "retry_backoff_seconds": 0.0,
    "retry_backoff_max_seconds": 0.0,
    "dart_request_delay_seconds": 0.0,
}


def build_settings(**overrides) -> SettingsProvider:
    values = {
        "api_access_token": "",
        "gemini_api_key": "",
        "odcloud_api_key": "",
        "data_go_kr_api_key": "",
        "dart_api_key": "",
        "redis_url": "",
        **FAST_RETRY,
    }
    values.update(overrides)
    return SettingsProvider(Settings(_env_file=None, **values))


class FakeReasoningProvider:
    """Replays canned replies; the last one repeats. Exceptions are raised."""

    name = "fake"

    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    async def generate(self, *, model, contents, config=None, timeout_seconds=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        nxt = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if callable(nxt) and not isinstance(nxt, Exception):
            nxt = nxt(contents)
        if isinstance(nxt, Exception):
            raise nxt
        return LLMResponse(text=str(nxt), candidates=[{"index": 0}], provider=self.name, model=model)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


