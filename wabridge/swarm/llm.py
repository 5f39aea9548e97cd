"""wabridge – LLM client with provider fallback.

Providers are tried in order (a preferred provider first when configured).
Providers without an API key are skipped; a provider that answers with a
rate-limit error is parked for a cooldown period. OpenAI-compatible
providers use ``/chat/completions``; Gemini uses ``generateContent``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
import structlog

from wabridge.core.errors import GenerationError

logger = structlog.get_logger()

PROTOCOL_OPENAI = "openai"
PROTOCOL_GEMINI = "gemini"

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests", "quota exceeded")


@dataclass
class LLMProvider:
    id: str
    base_url: str
    model: str
    api_key: str = ""
    protocol: str = PROTOCOL_OPENAI
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Structured response from an LLM call."""
    content: str
    provider_id: str = ""
    model: str = ""
    latency_ms: int = 0


class RateLimitedError(Exception):
    pass


def default_providers(settings: Any) -> list[LLMProvider]:
    """Fallback chain in its default order, built from settings keys."""
    return [
        LLMProvider(
            id="groq",
            base_url="https://api.groq.com/openai/v1",
            model="llama-3.3-70b-versatile",
            api_key=settings.groq_api_key,
        ),
        LLMProvider(
            id="sambanova",
            base_url="https://api.sambanova.ai/v1",
            model="Meta-Llama-3.1-70B-Instruct",
            api_key=settings.sambanova_api_key,
        ),
        LLMProvider(
            id="gemini",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            model="gemini-1.5-flash",
            api_key=settings.gemini_api_key,
            protocol=PROTOCOL_GEMINI,
        ),
        LLMProvider(
            id="openrouter",
            base_url="https://openrouter.ai/api/v1",
            model="meta-llama/llama-3.1-70b-instruct:free",
            api_key=settings.openrouter_api_key,
            extra_headers={"X-Title": "wabridge"},
        ),
    ]


class LLMClient:
    def __init__(
        self,
        providers: list[LLMProvider],
        preferred_provider: str = "",
        rate_limit_cooldown: float = 300,
        temperature: float = 0.5,
        max_tokens: int = 300,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._providers = providers
        self._preferred = preferred_provider
        self._cooldown = rate_limit_cooldown
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._clock = clock
        self._limited_until: dict[str, float] = {}

    def provider_order(self) -> list[LLMProvider]:
        order = list(self._providers)
        if self._preferred:
            preferred = [p for p in order if p.id == self._preferred]
            order = preferred + [p for p in order if p.id != self._preferred]
        return order

    def is_available(self, provider_id: str) -> bool:
        until = self._limited_until.get(provider_id)
        if until is None:
            return True
        if self._clock() >= until:
            del self._limited_until[provider_id]
            return True
        return False

    def mark_rate_limited(self, provider_id: str) -> None:
        self._limited_until[provider_id] = self._clock() + self._cooldown
        logger.warning("llm.rate_limited", provider=provider_id, cooldown=self._cooldown)

    async def chat(self, messages: list[dict[str, str]]) -> LLMResponse:
        """Run the fallback chain. Raises GenerationError if nobody answers."""
        for provider in self.provider_order():
            if not provider.api_key:
                continue
            if not self.is_available(provider.id):
                logger.debug("llm.provider_skipped", provider=provider.id)
                continue
            start = time.time()
            try:
                content = await self._call(provider, messages)
            except RateLimitedError:
                self.mark_rate_limited(provider.id)
                continue
            except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
                logger.error("llm.request_failed", provider=provider.id, error=str(e))
                continue
            if content:
                latency = round((time.time() - start) * 1000)
                logger.info("llm.success", provider=provider.id, model=provider.model, latency_ms=latency)
                return LLMResponse(content=content, provider_id=provider.id, model=provider.model, latency_ms=latency)
        logger.error("llm.all_providers_failed")
        raise GenerationError("All LLM providers failed")

    async def _call(self, provider: LLMProvider, messages: list[dict[str, str]]) -> str:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            if provider.protocol == PROTOCOL_GEMINI:
                contents = []
                system_text = ""
                for m in messages:
                    if m["role"] == "system":
                        system_text = m["content"]
                    else:
                        role = "user" if m["role"] == "user" else "model"
                        contents.append({"role": role, "parts": [{"text": m["content"]}]})
                payload: dict[str, Any] = {
                    "contents": contents,
                    "generationConfig": {
                        "temperature": self._temperature,
                        "maxOutputTokens": self._max_tokens,
                    },
                }
                if system_text:
                    payload["systemInstruction"] = {"parts": [{"text": system_text}]}
                url = f"{provider.base_url.rstrip('/')}/models/{provider.model}:generateContent?key={provider.api_key}"
                resp = await client.post(url, json=payload)
                self._raise_for_status(provider, resp)
                data = resp.json()
                return data["candidates"][0]["content"]["parts"][0]["text"]

            resp = await client.post(
                f"{provider.base_url.rstrip('/')}/chat/completions",
                headers={
                    "Authorization": f"Bearer {provider.api_key}",
                    "Content-Type": "application/json",
                    **provider.extra_headers,
                },
                json={
                    "model": provider.model,
                    "messages": messages,
                    "temperature": self._temperature,
                    "max_tokens": self._max_tokens,
                },
            )
            self._raise_for_status(provider, resp)
            data = resp.json()
            return data["choices"][0]["message"]["content"] or ""

    @staticmethod
    def _raise_for_status(provider: LLMProvider, resp: httpx.Response) -> None:
        if resp.status_code == 200:
            return
        detail = resp.text[:200]
        if resp.status_code == 429 or any(m in detail.lower() for m in _RATE_LIMIT_MARKERS):
            raise RateLimitedError(detail)
        logger.error("llm.provider_error", provider=provider.id, status=resp.status_code, detail=detail)
        raise httpx.HTTPStatusError(
            f"{provider.id} returned {resp.status_code}", request=resp.request, response=resp
        )
