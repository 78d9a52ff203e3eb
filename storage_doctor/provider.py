"""LLM vendor adapters: request encoding, streaming transport and decoding.

A provider composes a RateLimiter, a StreamDecoder variant and a wire
encoder for one vendor. Callers only see stream_chat()/chat(); vendor
payloads never leave this module and storage_doctor.stream.
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

import httpx

from .models import (
    StreamError,
    TextDelta,
    Tool,
    ToolCall,
    ToolCallCompleted,
    message_content,
    message_role,
)
from .ratelimit import DEFAULT_WINDOW, RateLimiter, RateLimitObserver, default_rate_limits
from .report import (
    AuthenticationError,
    CancelledError,
    ConfigError,
    ProviderError,
    StreamDecodeError,
    ValidationError,
)
from .stream import AnthropicStreamDecoder, OpenAIStreamDecoder, StreamDecoder, iter_sse_lines
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT = 300.0
ANTHROPIC_VERSION = "2023-06-01"
CANCEL_POLL_INTERVAL = 0.05

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-5",
}

API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

ChunkCallback = Callable[[str], None]
ToolCallCallback = Callable[[ToolCall], None]


class ChatProvider:
    """Base class for one vendor's streaming chat contract.

    Subclasses set the class attributes and implement build_request() and
    request_headers(); the streaming/decoding/limiting pipeline is shared.
    """

    name = "provider"  # identifier used in config
    display_name = "Provider"  # used in error messages
    default_url = ""
    decoder_class: type[StreamDecoder] = StreamDecoder
    tokens_header = ""
    requests_header = ""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        *,
        base_url: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        limiter: RateLimiter | None = None,
        client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        log: logging.Logger | None = None,
    ):
        self.api_key = api_key or ""
        self.model = model
        self.url = base_url or self.default_url
        self.max_tokens = max_tokens
        self.limiter = limiter
        self.log = log or logger
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=30.0)
        )

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -- wire format, per vendor ---------------------------------------------

    def build_request(self, messages: Sequence, tools: Sequence[Tool]) -> dict:
        raise NotImplementedError

    def request_headers(self) -> dict[str, str]:
        raise NotImplementedError

    # -- public contract ------------------------------------------------------

    def stream_chat(
        self,
        messages: Sequence,
        tools: Sequence[Tool],
        on_chunk: ChunkCallback,
        on_tool_call: ToolCallCallback | None = None,
        *,
        cancel: threading.Event | None = None,
        on_rate_limit: RateLimitObserver | None = None,
    ) -> None:
        """Stream one completion, forwarding text and finished tool calls in order.

        Raises AuthenticationError, ValidationError, ProviderError,
        StreamDecodeError or CancelledError; never returns partial failure.
        """
        if not self.api_key:
            raise AuthenticationError(f"{self.display_name} API key is not configured")

        if self.limiter is not None:
            self.limiter.wait(
                estimate_tokens(messages), cancel=cancel, observer=on_rate_limit
            )

        body = self.build_request(messages, tools or [])

        if cancel is not None and cancel.is_set():
            raise CancelledError("cancelled before request was sent")

        try:
            with self.client.stream(
                "POST", self.url, headers=self.request_headers(), json=body
            ) as response:
                if not response.is_success:
                    response.read()
                    raise ProviderError(
                        f"{self.display_name} API error: HTTP {response.status_code} - {response.text}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                with _close_on_cancel(response, cancel):
                    self._consume(response, on_chunk, on_tool_call, cancel)
                self._update_quota(response.headers)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if cancel is not None and cancel.is_set():
                raise CancelledError("cancelled while reading response stream") from e
            raise ProviderError(
                f"{self.display_name} API error: HTTP 0 - {e}", status_code=0, body=str(e)
            ) from e

    def chat(self, messages: Sequence, *, cancel: threading.Event | None = None) -> str:
        """Non-tool completion; returns the concatenated streamed text."""
        parts: list[str] = []
        self.stream_chat(messages, [], parts.append, cancel=cancel)
        return "".join(parts)

    # -- internals ------------------------------------------------------------

    def _consume(
        self,
        response: httpx.Response,
        on_chunk: ChunkCallback,
        on_tool_call: ToolCallCallback | None,
        cancel: threading.Event | None,
    ) -> None:
        decoder = self.decoder_class(self.log)
        lines = _cancellable(iter_sse_lines(response.iter_bytes()), cancel)
        for event in decoder.decode(lines):
            if isinstance(event, TextDelta):
                on_chunk(event.text)
            elif isinstance(event, ToolCallCompleted):
                if on_tool_call is not None:
                    on_tool_call(event.call)
            elif isinstance(event, StreamError):
                raise StreamDecodeError(
                    f"{self.display_name} stream error: {event.kind}: {event.message}"
                )

    def _update_quota(self, headers: Mapping[str, str]) -> None:
        if self.limiter is None:
            return
        self.limiter.update_from_headers(headers, self.tokens_header, self.requests_header)


def _cancellable(lines: Iterable[str], cancel: threading.Event | None) -> Iterator[str]:
    for line in lines:
        if cancel is not None and cancel.is_set():
            raise CancelledError("cancelled while reading response stream")
        yield line


@contextmanager
def _close_on_cancel(response: httpx.Response, cancel: threading.Event | None) -> Iterator[None]:
    """Close the response from a watcher thread once cancel fires, unblocking the reader."""
    if cancel is None:
        yield
        return
    done = threading.Event()

    def watch() -> None:
        while not done.wait(CANCEL_POLL_INTERVAL):
            if cancel.is_set():
                logger.debug("cancel requested, closing response stream")
                response.close()
                return

    watcher = threading.Thread(target=watch, name="stream-cancel", daemon=True)
    watcher.start()
    try:
        yield
    finally:
        done.set()
        watcher.join()


def _non_empty(messages: Sequence) -> Iterator[tuple[str, str]]:
    for m in messages:
        content = message_content(m)
        if content.strip():
            yield message_role(m), content


class AnthropicProvider(ChatProvider):
    name = "anthropic"
    display_name = "Anthropic"
    default_url = "https://api.anthropic.com/v1/messages"
    decoder_class = AnthropicStreamDecoder
    tokens_header = "anthropic-ratelimit-tokens-limit"
    requests_header = "anthropic-ratelimit-requests-limit"

    def request_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    def build_request(self, messages: Sequence, tools: Sequence[Tool]) -> dict:
        system_parts: list[str] = []
        wire: list[dict[str, str]] = []
        for role, content in _non_empty(messages):
            if role == "system":
                system_parts.append(content)
            else:
                wire.append({"role": role, "content": content})
        if not wire:
            raise ValidationError("no valid messages to send")

        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "stream": True,
            "messages": wire,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if tools:
            body["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.input_schema,
                }
                for t in tools
            ]
        return body


class OpenAIProvider(ChatProvider):
    name = "openai"
    display_name = "OpenAI"
    default_url = "https://api.openai.com/v1/chat/completions"
    decoder_class = OpenAIStreamDecoder
    tokens_header = "x-ratelimit-limit-tokens"
    requests_header = "x-ratelimit-limit-requests"

    def request_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    def build_request(self, messages: Sequence, tools: Sequence[Tool]) -> dict:
        wire = [{"role": role, "content": content} for role, content in _non_empty(messages)]
        if not wire:
            raise ValidationError("no valid messages to send")

        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "stream": True,
            "messages": wire,
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in tools
            ]
        return body


PROVIDERS: dict[str, type[ChatProvider]] = {
    AnthropicProvider.name: AnthropicProvider,
    OpenAIProvider.name: OpenAIProvider,
}


def new_provider(
    settings: Mapping[str, Any],
    client: httpx.Client | None = None,
    *,
    log: logging.Logger | None = None,
) -> ChatProvider:
    """Build the provider named by settings["provider"] with its own RateLimiter.

    API keys fall back to ANTHROPIC_API_KEY / OPENAI_API_KEY. A missing key
    is not an error here; the first stream_chat() call raises
    AuthenticationError instead.
    """
    name = (settings.get("provider") or "anthropic").lower()
    cls = PROVIDERS.get(name)
    if cls is None:
        raise ConfigError(
            f"unknown provider {name!r}, expected one of: {', '.join(sorted(PROVIDERS))}"
        )

    api_key = settings.get("api_key") or os.environ.get(API_KEY_ENV[name], "")

    default_tokens, default_requests = default_rate_limits(name)
    limiter = RateLimiter(
        settings.get("rate_limit_window") or DEFAULT_WINDOW,
        _setting_int(settings, "rate_limit_tokens", default_tokens),
        _setting_int(settings, "rate_limit_requests", default_requests),
    )

    return cls(
        api_key,
        settings.get("model") or DEFAULT_MODELS[name],
        base_url=settings.get("base_url"),
        max_tokens=settings.get("max_output_tokens") or DEFAULT_MAX_TOKENS,
        limiter=limiter,
        client=client,
        log=log,
    )


def _setting_int(settings: Mapping[str, Any], key: str, default: int) -> int:
    # 0 is meaningful (disables that dimension), so only None falls back.
    value = settings.get(key)
    return default if value is None else value
