"""Tests for the upstream chat completions client."""

import asyncio
import json

import httpx
import pytest

from chatrelay.core.exceptions import ConfigurationError, UpstreamError
from chatrelay.core.upstream_transport import register_upstream_transport
from chatrelay.ratelimit import AdaptiveRateLimiter
from chatrelay.upstream import (
    ACCOUNT_TYPE_URLS,
    UpstreamClient,
    UpstreamSettings,
    UpstreamStream,
    get_upstream_settings,
    sanitize_token,
)

BASE_URL = "http://copilot.test"


def _settings(**overrides) -> UpstreamSettings:
    values = {"base_url": BASE_URL, "api_key": "secret-token"}
    values.update(overrides)
    return UpstreamSettings(**values)


def _install(handler) -> list[httpx.Request]:
    """Route BASE_URL through a MockTransport; returns the captured requests."""
    seen: list[httpx.Request] = []

    def recorder(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    register_upstream_transport(BASE_URL, httpx.MockTransport(recorder))
    return seen


def _sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode("utf-8")


class TestSettings:
    @pytest.mark.parametrize("account_type", sorted(ACCOUNT_TYPE_URLS))
    def test_account_types(self, account_type):
        settings = get_upstream_settings({"upstream": {"account_type": account_type}})
        assert settings.base_url == ACCOUNT_TYPE_URLS[account_type]
        assert settings.chat_completions_url == f"{ACCOUNT_TYPE_URLS[account_type]}/chat/completions"

    def test_default_is_individual(self):
        assert get_upstream_settings({}).base_url == ACCOUNT_TYPE_URLS["individual"]

    def test_base_url_wins(self):
        settings = get_upstream_settings(
            {"upstream": {"base_url": "http://local:9000/", "account_type": "nope"}}
        )
        assert settings.chat_completions_url == "http://local:9000/chat/completions"

    def test_unknown_account_type(self):
        with pytest.raises(ConfigurationError, match="Invalid account type"):
            get_upstream_settings({"upstream": {"account_type": "personal"}})

    def test_bad_timeout_falls_back(self):
        settings = get_upstream_settings({"upstream": {"timeout": "soon"}})
        assert settings.timeout == 300.0


class TestSanitizeToken:
    @pytest.mark.parametrize(
        "raw",
        ["abc123", "  abc123\n", "Bearer abc123", "bearer   abc123", "abc\r\n123"],
    )
    def test_variants(self, raw):
        assert sanitize_token(raw) == "abc123"

    def test_empty(self):
        assert sanitize_token("   ") == ""


class TestCreateChatCompletions:
    @pytest.mark.asyncio
    async def test_headers(self, clear_transport_registry):
        seen = _install(lambda request: httpx.Response(200, json={"choices": []}))
        client = UpstreamClient(
            _settings(api_key="Bearer secret-token\n", extra_headers={"editor-version": "vscode/1.0"})
        )

        payload = {
            "model": "gpt-4.1",
            "messages": [
                {
                    "role": "user",
                    "content": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,AA"}}],
                }
            ],
        }
        await client.create_chat_completions(payload, initiator="agent")

        request = seen[0]
        assert request.url == f"{BASE_URL}/chat/completions"
        assert request.headers["authorization"] == "Bearer secret-token"
        assert request.headers["x-initiator"] == "agent"
        assert request.headers["copilot-vision-request"] == "true"
        assert request.headers["editor-version"] == "vscode/1.0"
        assert request.headers["x-request-id"]
        assert json.loads(request.content) == payload

    @pytest.mark.asyncio
    async def test_no_vision_header_for_text(self, clear_transport_registry):
        seen = _install(lambda request: httpx.Response(200, json={}))
        client = UpstreamClient(_settings(api_key=""))
        await client.create_chat_completions(
            {"model": "m", "messages": [{"role": "user", "content": "hi"}]}
        )
        assert "copilot-vision-request" not in seen[0].headers
        assert "authorization" not in seen[0].headers
        assert seen[0].headers["x-initiator"] == "user"

    @pytest.mark.asyncio
    async def test_non_stream_returns_json(self, clear_transport_registry):
        _install(lambda request: httpx.Response(200, json={"id": "chatcmpl-1"}))
        client = UpstreamClient(_settings())
        result = await client.create_chat_completions({"model": "m", "messages": []})
        assert result == {"id": "chatcmpl-1"}

    @pytest.mark.asyncio
    async def test_error_status_raises_with_body(self, clear_transport_registry):
        _install(lambda request: httpx.Response(500, text='{"error":{"message":"boom"}}'))
        client = UpstreamClient(_settings())

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_chat_completions({"model": "m", "messages": []})

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Failed to create chat completions"
        assert "boom" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_429_reports_to_limiter(self, clear_transport_registry, fake_clock):
        _install(lambda request: httpx.Response(429, headers={"retry-after": "2"}, text="slow down"))
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        client = UpstreamClient(_settings(), limiter)

        with pytest.raises(UpstreamError) as exc_info:
            await client.create_chat_completions({"model": "m", "messages": []})

        assert exc_info.value.status_code == 429
        assert limiter.consecutive_429_count == 1
        assert limiter.cooldown_until_ms == fake_clock() + 2000

    @pytest.mark.asyncio
    async def test_success_resets_limiter(self, clear_transport_registry, fake_clock):
        _install(lambda request: httpx.Response(200, json={}))
        limiter = AdaptiveRateLimiter(clock=fake_clock, sleep=fake_clock.sleep)
        await limiter.report_throttled("1")
        fake_clock.advance(5_000)

        await UpstreamClient(_settings(), limiter).create_chat_completions({"model": "m"})
        assert limiter.consecutive_429_count == 0
        assert limiter.cooldown_until_ms == 0

    @pytest.mark.asyncio
    async def test_transport_error_is_502(self, clear_transport_registry):
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        _install(fail)
        with pytest.raises(UpstreamError) as exc_info:
            await UpstreamClient(_settings()).create_chat_completions({"model": "m"})
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_invalid_json_is_502(self, clear_transport_registry):
        _install(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(UpstreamError) as exc_info:
            await UpstreamClient(_settings()).create_chat_completions({"model": "m"})
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_client_closed_when_send_is_cancelled(self, clear_transport_registry, monkeypatch):
        closed = []
        original_aclose = httpx.AsyncClient.aclose

        async def tracking_aclose(client):
            closed.append(client)
            await original_aclose(client)

        monkeypatch.setattr(httpx.AsyncClient, "aclose", tracking_aclose)

        def cancelled(request: httpx.Request) -> httpx.Response:
            raise asyncio.CancelledError()

        _install(cancelled)
        with pytest.raises(asyncio.CancelledError):
            await UpstreamClient(_settings()).create_chat_completions({"model": "m"})
        assert len(closed) == 1

    @pytest.mark.asyncio
    async def test_client_kept_open_for_stream(self, clear_transport_registry, monkeypatch):
        closed = []
        original_aclose = httpx.AsyncClient.aclose

        async def tracking_aclose(client):
            closed.append(client)
            await original_aclose(client)

        monkeypatch.setattr(httpx.AsyncClient, "aclose", tracking_aclose)
        _install(lambda request: httpx.Response(200, content=_sse("[DONE]")))

        result = await UpstreamClient(_settings()).create_chat_completions(
            {"model": "m", "stream": True}
        )
        assert closed == []
        await result.aclose()
        assert len(closed) == 1


class TestStreaming:
    @pytest.mark.asyncio
    async def test_aiter_chunks(self, clear_transport_registry):
        body = _sse(
            '{"choices":[{"delta":{"content":"Hi"},"index":0}]}',
            '{"choices":[{"delta":{},"finish_reason":"stop","index":0}]}',
            "[DONE]",
        )
        _install(lambda request: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=body
        ))

        result = await UpstreamClient(_settings()).create_chat_completions(
            {"model": "m", "messages": [], "stream": True}
        )
        assert isinstance(result, UpstreamStream)
        assert result.status_code == 200

        chunks = [chunk async for chunk in result.aiter_chunks()]
        assert [c["choices"][0].get("finish_reason") for c in chunks] == [None, "stop"]

    @pytest.mark.asyncio
    async def test_aiter_bytes_is_unchanged(self, clear_transport_registry):
        body = _sse('{"choices":[]}', "[DONE]")
        _install(lambda request: httpx.Response(200, content=body))

        result = await UpstreamClient(_settings()).create_chat_completions(
            {"model": "m", "stream": True}
        )
        assert b"".join([chunk async for chunk in result.aiter_bytes()]) == body

    @pytest.mark.asyncio
    async def test_error_object_mid_stream_raises(self, clear_transport_registry):
        body = _sse(
            '{"choices":[{"delta":{"content":"Hi"},"index":0}]}',
            '{"error":{"message":"model overloaded"}}',
        )
        _install(lambda request: httpx.Response(200, content=body))

        result = await UpstreamClient(_settings()).create_chat_completions(
            {"model": "m", "stream": True}
        )
        received = []
        with pytest.raises(UpstreamError, match="model overloaded"):
            async for chunk in result.aiter_chunks():
                received.append(chunk)
        assert len(received) == 1
