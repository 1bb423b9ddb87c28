from __future__ import annotations

import abc
from typing import Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import LLMConfig
from .errors import ConfigError, SqlAskError
from .logging_utils import get_logger

logger = get_logger(__name__)

Message = Dict[str, str]


class LLMError(SqlAskError):
    kind = "llm_unavailable"
    default_user_message = "The query generator is unavailable right now. Please try again shortly."


class RetryableLLMError(LLMError):
    pass


class LLMClient(abc.ABC):
    @abc.abstractmethod
    async def complete(self, messages: List[Message]) -> str:
        """Return the raw assistant text for a chat-style message list."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OpenAIClient(LLMClient):
    def __init__(self, cfg: LLMConfig, api_key: str, client: Optional[httpx.AsyncClient] = None):
        self._cfg = cfg
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=cfg.timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def complete(self, messages: List[Message]) -> str:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
        }
        payload = {
            "model": self._cfg.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
            "temperature": self._cfg.temperature,
            "max_tokens": self._cfg.max_tokens,
        }
        url = self._cfg.base_url.rstrip("/") + "/chat/completions"
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._cfg.retry.attempts),
            wait=wait_exponential(multiplier=self._cfg.retry.backoff_seconds, min=self._cfg.retry.backoff_seconds, max=10),
            retry=retry_if_exception_type(RetryableLLMError),
        ):
            with attempt:
                try:
                    resp = await self._client.post(url, headers=headers, json=payload)
                except httpx.TransportError as exc:
                    logger.warning("llm_transport_error", error=type(exc).__name__)
                    raise RetryableLLMError(f"LLM transport error: {type(exc).__name__}") from exc
                if resp.status_code == 429 or resp.status_code >= 500:
                    logger.warning("llm_http_retry", status=resp.status_code)
                    raise RetryableLLMError(f"LLM HTTP {resp.status_code}")
                if resp.status_code >= 400:
                    raise LLMError(f"LLM HTTP {resp.status_code}: {resp.text[:200]}")
                try:
                    content = resp.json()["choices"][0]["message"]["content"]
                except (KeyError, IndexError, TypeError, ValueError) as exc:
                    raise LLMError("Unexpected LLM response") from exc
                return content or ""
        raise LLMError("LLM retries exhausted")


def build_llm_client(cfg: LLMConfig, api_key: Optional[str]) -> LLMClient:
    if cfg.provider.lower() == "openai":
        if not api_key:
            raise ConfigError("LLM_API_KEY is not set")
        return OpenAIClient(cfg, api_key)
    raise ConfigError(f"Unsupported LLM provider: {cfg.provider}")


__all__ = ["LLMClient", "LLMError", "OpenAIClient", "RetryableLLMError", "build_llm_client"]
