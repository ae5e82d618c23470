"""HTTP client for the OpenAI-compatible chat completions upstream."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional

import httpx

from ..core.exceptions import ConfigurationError, UpstreamError
from ..core.sse import detect_stream_error, iter_sse_json
from ..core.upstream_transport import get_upstream_transport
from ..initiator import USER, Initiator
from ..ratelimit import AdaptiveRateLimiter, CancelToken

logger = logging.getLogger("chatrelay")

DEFAULT_TIMEOUT = 300.0
DEFAULT_ACCOUNT_TYPE = "individual"

ACCOUNT_TYPE_URLS = {
    "individual": "https://api.githubcopilot.com",
    "business": "https://api.business.githubcopilot.com",
    "enterprise": "https://api.enterprise.githubcopilot.com",
}

CHAT_COMPLETIONS_PATH = "/chat/completions"


@dataclass
class UpstreamSettings:
    """Resolved upstream configuration."""

    base_url: str
    api_key: str = ""
    timeout: float = DEFAULT_TIMEOUT
    extra_headers: dict[str, str] = field(default_factory=dict)

    @property
    def chat_completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{CHAT_COMPLETIONS_PATH}"


def get_upstream_settings(config: Mapping[str, Any] | None) -> UpstreamSettings:
    """Read the ``upstream`` section of the config.

    An explicit ``base_url`` wins over ``account_type``.

    Raises:
        ConfigurationError: If the account type is unknown
    """
    section = (config or {}).get("upstream") or {}
    if not isinstance(section, Mapping):
        section = {}

    base_url = section.get("base_url")
    if not base_url:
        account_type = str(section.get("account_type") or DEFAULT_ACCOUNT_TYPE)
        base_url = ACCOUNT_TYPE_URLS.get(account_type)
        if base_url is None:
            raise ConfigurationError(
                f'Invalid account type "{account_type}". '
                f"Must be one of: {', '.join(ACCOUNT_TYPE_URLS)}"
            )

    try:
        timeout = float(section.get("timeout") or DEFAULT_TIMEOUT)
    except (TypeError, ValueError):
        timeout = DEFAULT_TIMEOUT

    extra_headers = section.get("extra_headers") or {}
    if not isinstance(extra_headers, Mapping):
        extra_headers = {}

    return UpstreamSettings(
        base_url=str(base_url),
        api_key=str(section.get("api_key") or ""),
        timeout=timeout if timeout > 0 else DEFAULT_TIMEOUT,
        extra_headers={str(k): str(v) for k, v in extra_headers.items()},
    )


def sanitize_token(token: str) -> str:
    """Strip whitespace, line breaks and any ``Bearer`` prefix from a credential."""
    cleaned = token.strip()
    if cleaned[:7].lower() == "bearer ":
        cleaned = cleaned[7:]
    return "".join(cleaned.split())


def has_vision_content(messages: Any) -> bool:
    """Return True if any message carries an ``image_url`` content part."""
    if not isinstance(messages, list):
        return False
    for message in messages:
        if not isinstance(message, Mapping):
            continue
        content = message.get("content")
        if isinstance(content, list) and any(
            isinstance(part, Mapping) and part.get("type") == "image_url"
            for part in content
        ):
            return True
    return False


class UpstreamStream:
    """An open streaming upstream response.

    Exactly one of ``aiter_chunks`` or ``aiter_bytes`` should be consumed.
    Both close the underlying response when they finish.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self._response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    async def aiter_chunks(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded ``chat.completion.chunk`` objects.

        Raises:
            UpstreamError: If the upstream sends an error object mid-stream
        """
        try:
            async for chunk in iter_sse_json(self._response.aiter_lines()):
                error = detect_stream_error(chunk)
                if error:
                    logger.warning(f"Upstream stream error: {error}")
                    raise UpstreamError(error, status_code=self.status_code)
                yield chunk
        finally:
            await self.aclose()

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the raw upstream SSE bytes unchanged."""
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()
        await self._client.aclose()


class UpstreamClient:
    """Sends chat completions upstream behind the shared rate limiter.

    The client never retries. A 429 adjusts the limiter's schedule and is
    raised to the caller like any other non-2xx status.
    """

    def __init__(
        self,
        settings: UpstreamSettings,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
    ):
        self.settings = settings
        self.rate_limiter = rate_limiter

    def build_headers(self, payload: Mapping[str, Any], initiator: Initiator) -> dict[str, str]:
        """Build the outbound headers for one chat completions call."""
        headers: dict[str, str] = {
            "content-type": "application/json",
            "accept": "application/json",
        }
        headers.update(self.settings.extra_headers)

        token = sanitize_token(self.settings.api_key)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        headers["X-Initiator"] = initiator
        headers["x-request-id"] = str(uuid.uuid4())
        if has_vision_content(payload.get("messages")):
            headers["copilot-vision-request"] = "true"
        return headers

    async def create_chat_completions(
        self,
        payload: Mapping[str, Any],
        *,
        initiator: Initiator = USER,
        cancel_token: Optional[CancelToken] = None,
    ) -> dict[str, Any] | UpstreamStream:
        """Send a chat completions request upstream.

        Args:
            payload: OpenAI Chat Completions request body
            initiator: Value for the ``X-Initiator`` header
            cancel_token: Aborts the wait for admission when fired

        Returns:
            The decoded JSON body, or an ``UpstreamStream`` when
            ``payload["stream"]`` is true

        Raises:
            RateLimitQueueFull: Too many callers waiting for admission
            RateLimitCancelled: ``cancel_token`` fired while waiting
            UpstreamError: Non-2xx status or transport failure
        """
        if self.rate_limiter is not None:
            waited_ms = await self.rate_limiter.acquire(cancel_token)
            if waited_ms and logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Admitted after waiting {waited_ms:.0f}ms")

        url = self.settings.chat_completions_url
        headers = self.build_headers(payload, initiator)
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        stream = bool(payload.get("stream"))

        timeout = self.settings.timeout
        if stream:
            client_timeout = httpx.Timeout(connect=timeout, read=None, write=timeout, pool=timeout)
        else:
            client_timeout = httpx.Timeout(timeout)

        client = httpx.AsyncClient(
            timeout=client_timeout,
            transport=get_upstream_transport(url),
            follow_redirects=True,
        )
        logger.debug(f"Sending {'streaming ' if stream else ''}request to {url} (initiator={initiator})")

        # The client is closed on every exit except a stream handed to the caller
        upstream_stream: Optional[UpstreamStream] = None
        try:
            try:
                request = client.build_request("POST", url, headers=headers, content=body)
                response = await client.send(request, stream=stream)
            except httpx.HTTPError as exc:
                logger.error(f"Failed to reach upstream {url}: {exc} (type: {exc.__class__.__name__})")
                raise UpstreamError(
                    f"Upstream request failed: {exc.__class__.__name__}: {exc}",
                    status_code=502,
                ) from exc

            if response.status_code >= 400:
                try:
                    error_body = (await response.aread()).decode("utf-8", errors="replace")
                finally:
                    await response.aclose()

                if response.status_code == 429 and self.rate_limiter is not None:
                    await self.rate_limiter.report_throttled(response.headers.get("retry-after"))

                logger.error(
                    f"Failed to create chat completions: status={response.status_code} body={error_body[:500]}"
                )
                raise UpstreamError(
                    "Failed to create chat completions",
                    status_code=response.status_code,
                    body=error_body,
                )

            if self.rate_limiter is not None:
                await self.rate_limiter.report_success()

            if stream:
                upstream_stream = UpstreamStream(client, response)
                return upstream_stream

            try:
                return response.json()
            except json.JSONDecodeError as exc:
                raise UpstreamError(
                    "Upstream returned invalid JSON",
                    status_code=502,
                    body=response.text,
                ) from exc
        finally:
            if upstream_stream is None:
                await client.aclose()
