from grantscan.services.llm.providers.gemini_provider import GeminiProvider

__all__ = ["GeminiProvider"]
