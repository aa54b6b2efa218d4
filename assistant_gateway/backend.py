"""Connector for the generative AI backend."""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .config import GatewayConfig
from .errors import BackendFailure, BackendUnconfigured

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Generation:
    """Text produced by one backend call and the tokens it was billed for."""
    text: str
    model: str
    total_tokens: int = 0


class AIBackend(Protocol):
    """Anything that turns a prompt into text."""

    model: str

    async def generate(self, prompt: str) -> Generation: ...

    async def aclose(self) -> None: ...


class GeminiBackend:
    """
    Calls the Gemini ``generateContent`` REST endpoint.

    A single attempt is made per call; transport errors, timeouts and
    non-2xx responses all surface as BackendFailure.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-pro",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the backend client.

        Args:
            api_key: Google AI API key
            model: Model identifier, also used for cost accounting
            base_url: API root
            timeout: Per-call timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        if not api_key:
            raise BackendUnconfigured()
        self.model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "GeminiBackend":
        if not config.ai_api_key:
            raise BackendUnconfigured()
        return cls(
            api_key=config.ai_api_key,
            model=config.ai_model,
            base_url=config.ai_base_url,
            timeout=config.ai_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def generate(self, prompt: str) -> Generation:
        url = f"{self._base_url}/models/{self.model}:generateContent"
        payload = {"contents": [{"parts": [{"text": prompt}]}]}

        try:
            response = await self._get_client().post(
                url,
                json=payload,
                headers={"x-goog-api-key": self._api_key},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise BackendFailure(f"Timeout calling {self.model}") from e
        except httpx.HTTPStatusError as e:
            raise BackendFailure(
                f"{self.model} returned HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise BackendFailure(f"Cannot reach {self.model}: {e}") from e

        if not isinstance(data, dict):
            raise BackendFailure(f"{self.model} returned an unexpected body")
        return Generation(
            text=self._extract_text(data),
            model=self.model,
            total_tokens=int(data.get("usageMetadata", {}).get("totalTokenCount", 0)),
        )

    def _extract_text(self, data: dict) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise BackendFailure(f"{self.model} returned no candidates") from e
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
