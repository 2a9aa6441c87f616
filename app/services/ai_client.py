import logging

from app.core.config import Settings
from app.resilience.http import OutboundClient

logger = logging.getLogger(__name__)


class AIProviderError(Exception):
    """The provider answered, but not with a usable completion."""


class AIClient:
    """Generative-AI provider (Gemini REST API) reached through the ``ai`` breaker."""

    def __init__(self, outbound: OutboundClient, settings: Settings):
        self._outbound = outbound
        self._settings = settings

    @property
    def model(self) -> str:
        return self._settings.ai_model

    async def generate(self, prompt: str) -> str:
        url = f"{self._settings.ai_base_url.rstrip('/')}/models/{self.model}:generateContent"
        payload = await self._outbound.post(
            url,
            params={"key": self._settings.ai_api_key},
            json={"contents": [{"parts": [{"text": prompt}]}]},
        )
        try:
            return payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise AIProviderError(f"Unexpected provider response: {e}") from e
