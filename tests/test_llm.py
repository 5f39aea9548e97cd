"""wabridge – LLM Client Tests.

Provider fallback, rate-limit cooldown and the two wire protocols. HTTP is
mocked at ``httpx.AsyncClient.post``; no real API calls.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from config.settings import Settings
from wabridge.core.errors import GenerationError
from wabridge.swarm.llm import LLMClient, LLMProvider, PROTOCOL_GEMINI, default_providers

MESSAGES = [{"role": "system", "content": "Be nice"}, {"role": "user", "content": "halo"}]


def _openai_ok(url: str, text: str = "Halo kak!") -> httpx.Response:
    return httpx.Response(
        200,
        json={"choices": [{"message": {"content": text}}]},
        request=httpx.Request("POST", url),
    )


def _status(url: str, code: int, body: str = "error") -> httpx.Response:
    return httpx.Response(code, text=body, request=httpx.Request("POST", url))


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def providers() -> list[LLMProvider]:
    return [
        LLMProvider(id="groq", base_url="https://groq.test/v1", model="g", api_key="k1"),
        LLMProvider(id="sambanova", base_url="https://samba.test/v1", model="s", api_key="k2"),
    ]


class TestFallback:
    @pytest.mark.anyio
    async def test_first_provider_answers(self, providers) -> None:
        client = LLMClient(providers)
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: _openai_ok(url)
            response = await client.chat(MESSAGES)

        assert response.content == "Halo kak!"
        assert response.provider_id == "groq"
        assert post.call_args.args[0] == "https://groq.test/v1/chat/completions"
        body = post.call_args.kwargs["json"]
        assert body["messages"] == MESSAGES
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer k1"

    @pytest.mark.anyio
    async def test_falls_back_on_server_error(self, providers) -> None:
        client = LLMClient(providers)
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: _status(url, 500) if "groq" in url else _openai_ok(url, "dari samba")
            response = await client.chat(MESSAGES)

        assert response.provider_id == "sambanova"
        assert response.content == "dari samba"

    @pytest.mark.anyio
    async def test_falls_back_on_network_error(self, providers) -> None:
        client = LLMClient(providers)

        def fail_groq(url: str, **kw):
            if "groq" in url:
                raise httpx.ConnectError("unreachable")
            return _openai_ok(url)

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = fail_groq
            response = await client.chat(MESSAGES)
        assert response.provider_id == "sambanova"

    @pytest.mark.anyio
    async def test_providers_without_key_are_skipped(self, providers) -> None:
        providers[0].api_key = ""
        client = LLMClient(providers)
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: _openai_ok(url)
            response = await client.chat(MESSAGES)
        assert response.provider_id == "sambanova"
        assert post.call_count == 1

    @pytest.mark.anyio
    async def test_preferred_provider_goes_first(self, providers) -> None:
        client = LLMClient(providers, preferred_provider="sambanova")
        assert [p.id for p in client.provider_order()] == ["sambanova", "groq"]

    @pytest.mark.anyio
    async def test_all_failing_raises(self, providers) -> None:
        client = LLMClient(providers)
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: _status(url, 500)
            with pytest.raises(GenerationError):
                await client.chat(MESSAGES)

    @pytest.mark.anyio
    async def test_malformed_payload_counts_as_failure(self, providers) -> None:
        client = LLMClient(providers[:1])
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: httpx.Response(
                200, json={"choices": []}, request=httpx.Request("POST", url)
            )
            with pytest.raises(GenerationError):
                await client.chat(MESSAGES)


class TestRateLimit:
    @pytest.mark.anyio
    async def test_rate_limited_provider_is_parked(self, providers) -> None:
        clock = FakeClock()
        client = LLMClient(providers, rate_limit_cooldown=300, clock=clock)
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: _status(url, 429) if "groq" in url else _openai_ok(url)
            await client.chat(MESSAGES)
            assert not client.is_available("groq")

            post.reset_mock()
            await client.chat(MESSAGES)
            assert post.call_count == 1
            assert "samba" in post.call_args.args[0]

            clock.now += 301
            assert client.is_available("groq")

    @pytest.mark.anyio
    async def test_rate_limit_detected_from_body(self, providers) -> None:
        client = LLMClient(providers)
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: (
                _status(url, 400, "Quota exceeded for model") if "groq" in url else _openai_ok(url)
            )
            await client.chat(MESSAGES)
        assert not client.is_available("groq")


class TestGemini:
    @pytest.mark.anyio
    async def test_gemini_request_shape(self) -> None:
        provider = LLMProvider(
            id="gemini",
            base_url="https://gemini.test/v1beta",
            model="gemini-1.5-flash",
            api_key="gk",
            protocol=PROTOCOL_GEMINI,
        )
        client = LLMClient([provider])
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = lambda url, **kw: httpx.Response(
                200,
                json={"candidates": [{"content": {"parts": [{"text": "Halo dari Gemini"}]}}]},
                request=httpx.Request("POST", url),
            )
            response = await client.chat(MESSAGES)

        assert response.content == "Halo dari Gemini"
        assert post.call_args.args[0] == "https://gemini.test/v1beta/models/gemini-1.5-flash:generateContent?key=gk"
        body = post.call_args.kwargs["json"]
        assert body["systemInstruction"] == {"parts": [{"text": "Be nice"}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "halo"}]}]


class TestDefaults:
    def test_default_chain_order(self) -> None:
        settings = Settings(groq_api_key="a", gemini_api_key="b")
        chain = default_providers(settings)
        assert [p.id for p in chain] == ["groq", "sambanova", "gemini", "openrouter"]
        assert chain[2].protocol == PROTOCOL_GEMINI
        assert chain[1].api_key == ""
