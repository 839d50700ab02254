# core/anthropic_client.py
import json
from typing import Any, AsyncGenerator, Dict, Optional
import httpx
from config.settings import settings
import logging
from util.errors import ProviderError, ProviderRateLimited
from util.timing import timed

logger = logging.getLogger(__name__)

_SSE_DATA: str = "data:"


def _raise_for_status(status_code: int, body: str) -> None:
    """
    Map a non-2xx Anthropic reply onto the provider error taxonomy.
    429 (or an error body naming rate_limit) -> ProviderRateLimited.
    """
    if status_code // 100 == 2:
        return
    snippet = body[:300]
    if status_code == 429 or "rate_limit" in body:
        raise ProviderRateLimited(
            f"anthropic rate limited {status_code}: {snippet}", status_code
        )
    raise ProviderError(f"anthropic error {status_code}: {snippet}", status_code)


def _text_from_message(data: Dict[str, Any]) -> str:
    """
    Concatenate every text block of a messages-API reply.
    """
    parts = []
    for node in data.get("content") or []:
        if isinstance(node, dict) and node.get("type") == "text":
            parts.append(node.get("text") or "")
    return "".join(parts)


def _delta_text(event: Dict[str, Any]) -> Optional[str]:
    """
    Pull the text fragment out of one streamed event, or None for events that
    carry no text (message_start, ping, content_block_stop, ...).
    """
    etype = event.get("type")
    if etype == "error":
        err = event.get("error") or {}
        kind = str(err.get("type") or "")
        msg = f"anthropic stream error {kind}: {err.get('message') or ''}"
        if kind == "rate_limit_error":
            raise ProviderRateLimited(msg, 429)
        raise ProviderError(msg)
    if etype != "content_block_delta":
        return None
    delta = event.get("delta") or {}
    if delta.get("type") != "text_delta":
        return None
    return delta.get("text") or ""


class AnthropicCompletionProvider:
    """
    CompletionProvider over the Anthropic messages API using raw httpx.
    `transport` exists so tests can plug in httpx.MockTransport.
    """

    def __init__(
        self,
        *,
        api_key: str = settings.ANTHROPIC_API_KEY,
        model: str = settings.ANTHROPIC_MODEL,
        api_url: str = settings.ANTHROPIC_API_URL,
        version: str = settings.ANTHROPIC_VERSION,
        timeout: float = settings.COMPLETION_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._api_url = api_url
        self._version = version
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": self._version,
            "content-type": "application/json",
        }

    def _payload(
        self, prompt: str, temperature: float, max_tokens: int, stream: bool
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if stream:
            payload["stream"] = True
        return payload

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def complete(
        self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 800
    ) -> str:
        payload = self._payload(prompt, temperature, max_tokens, stream=False)
        with timed(logger, "ai.complete", model=self._model):
            try:
                async with self._client() as client:
                    r = await client.post(
                        self._api_url, headers=self._headers(), json=payload
                    )
            except httpx.HTTPError as e:
                raise ProviderError(f"anthropic request failed: {type(e).__name__}") from e

        _raise_for_status(r.status_code, r.text)
        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError("anthropic reply was not JSON") from e

        text = _text_from_message(data if isinstance(data, dict) else {})
        if not text.strip():
            raise ProviderError("anthropic returned no text content")
        return text

    async def stream(
        self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 800
    ) -> AsyncGenerator[str, None]:
        payload = self._payload(prompt, temperature, max_tokens, stream=True)
        fragments = 0
        with timed(logger, "ai.stream", model=self._model):
            try:
                async with self._client() as client:
                    async with client.stream(
                        "POST", self._api_url, headers=self._headers(), json=payload
                    ) as r:
                        if r.status_code // 100 != 2:
                            body = (await r.aread()).decode("utf-8", errors="replace")
                            _raise_for_status(r.status_code, body)
                        async for line in r.aiter_lines():
                            line = line.strip()
                            if not line.startswith(_SSE_DATA):
                                continue
                            try:
                                event = json.loads(line[len(_SSE_DATA) :].strip())
                            except json.JSONDecodeError:
                                logger.debug("ai.stream.bad_line")
                                continue
                            text = _delta_text(event)
                            if text:
                                fragments += 1
                                yield text
            except httpx.HTTPError as e:
                raise ProviderError(f"anthropic stream failed: {type(e).__name__}") from e
        logger.info("ai.stream.fragments n=%d", fragments)
