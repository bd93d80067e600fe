import inspect
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from palaver.config import ProviderConfig
from palaver.errors import (
    ProviderNotFoundError,
    StructuredOutputError,
    UnsupportedContentError,
)
from palaver.events import (
    ContentDelta,
    DoneEvent,
    ErrorEvent,
    FinishReason,
    StreamEvent,
    ThinkingDelta,
    ToolCallFragment,
    Usage,
)
from palaver.instrumentation import completion_span, record_error, record_usage
from palaver.message import (
    AudioPart,
    ContentSource,
    ImagePart,
    Message,
    MessageRole,
    TextPart,
)
from palaver.request import ChatRequest
from palaver.streaming import ToolCallAccumulator

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


@dataclass
class StructuredOutput:
    """A parsed JSON reply and the text it came from."""

    data: Any
    raw_text: str


@dataclass
class EmbeddingResult:
    model: str
    embeddings: list[list[float]]
    usage: Usage | None = None


# ---------------------------------------------------------------------------
# Per-stream state
# ---------------------------------------------------------------------------

class StreamState:
    """Mutable state for a single adapter invocation.

    Translators record text, tool calls, the finish reason and usage here;
    :meth:`ModelProvider.stream` emits the terminal event from it once the
    vendor stream is exhausted.
    """

    def __init__(self, provider: str, model: str):
        self.provider = provider
        self.model = model
        self.started_at = time.time()
        self.accumulated = ""
        self.tool_calls = ToolCallAccumulator(self.started_at)
        self.finish_reason: FinishReason | None = None
        self.usage: Usage | None = None
        self.error: tuple[str, str | None] | None = None
        self.response_id: str | None = None
        # vendor-local position (stream index, content block) -> call_id
        self.call_ids: dict[int, str] = {}
        # content block -> arguments held back until the block closes
        self.pending_arguments: dict[int, str] = {}
        self._last_timestamp = self.started_at
        self._sequence = 0

    def timestamp(self) -> float:
        now = max(time.time(), self._last_timestamp)
        self._last_timestamp = now
        return now

    def next_id(self) -> str:
        if self.response_id:
            return self.response_id
        self._sequence += 1
        return f"{self.provider}-{self._sequence}-{uuid.uuid4().hex[:8]}"

    def content(self, delta: str) -> ContentDelta:
        self.accumulated += delta
        return ContentDelta(
            id=self.next_id(), model=self.model, timestamp=self.timestamp(),
            delta=delta, accumulated=self.accumulated,
        )

    def thinking(
        self, text: str, signature: str | None = None, redacted: str | None = None,
    ) -> ThinkingDelta:
        return ThinkingDelta(
            content=text, id=self.next_id(), model=self.model,
            timestamp=self.timestamp(), signature=signature, redacted=redacted,
        )

    def tool_call(
        self, call_id: str, index: int, function_name: str | None,
        arguments_fragment: str,
    ) -> ToolCallFragment:
        fragment = ToolCallFragment(
            id=self.next_id(), model=self.model, timestamp=self.timestamp(),
            call_id=call_id, index=index, function_name=function_name or None,
            arguments_fragment=arguments_fragment,
        )
        self.tool_calls.feed(fragment)
        return fragment

    def done(self) -> DoneEvent:
        reason = self.finish_reason
        if reason is None:
            reason = FinishReason.TOOL_CALLS if len(self.tool_calls) else FinishReason.STOP
        return DoneEvent(
            id=self.next_id(), model=self.model, timestamp=self.timestamp(),
            finish_reason=reason, usage=self.usage,
        )

    def failure(self, message: str, code: str | None = None) -> ErrorEvent:
        return ErrorEvent(
            id=self.next_id(), model=self.model, timestamp=self.timestamp(),
            message=message, code=code,
        )


def _error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    return str(code) if code is not None else None


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class ModelProvider:
    """Turns one vendor's streaming API into canonical events.

    Subclasses implement :meth:`build_params`, :meth:`open_stream` and
    :meth:`translate`.  :meth:`stream` supplies the guarantees every
    adapter shares: vendor and transport failures become a single
    :class:`ErrorEvent`, exactly one terminal event is emitted and it is
    the last one, and cancellation closes the vendor stream.
    """

    name: str = "provider"

    def build_params(self, request: ChatRequest) -> dict[str, Any]:
        raise NotImplementedError

    async def open_stream(self, params: dict[str, Any]) -> AsyncIterator[Any]:
        raise NotImplementedError

    def translate(self, chunk: Any, state: StreamState) -> Iterable[StreamEvent]:
        raise NotImplementedError

    def finish(self, state: StreamState) -> Iterable[StreamEvent]:
        """Events to emit after the vendor stream ends, before the terminal one."""
        return ()

    async def close_stream(self, raw: Any) -> None:
        for attr in ("close", "aclose"):
            closer = getattr(raw, attr, None)
            if closer is not None:
                result = closer()
                if inspect.isawaitable(result):
                    await result
                return

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Stream canonical events for *request*.

        Malformed requests (unsupported content parts) raise before the
        first event; nothing else escapes.
        """
        params = self.build_params(request)
        state = StreamState(self.name, request.model)
        token = request.cancel_token
        if request.cancelled:
            yield state.failure("Request cancelled", code="cancelled")
            return

        raw = None
        unregister = None
        async with completion_span(self.name, request.model) as span:
            try:
                logger.debug(f"Opening {self.name} stream for {request.model}")
                raw = await self.open_stream(params)
                if token is not None:
                    opened = raw
                    unregister = token.add_abort_callback(
                        lambda: self.close_stream(opened)
                    )
                async for chunk in raw:
                    if request.cancelled:
                        break
                    for event in self.translate(chunk, state):
                        yield event
                    if state.error is not None:
                        break
            except Exception as e:
                if not request.cancelled:
                    logger.error(f"{self.name} stream failed: {e}")
                    record_error(span, e)
                    yield state.failure(str(e) or type(e).__name__, _error_code(e))
                    return
            finally:
                if unregister is not None:
                    unregister()
                if raw is not None:
                    await self._safe_close(raw)

            if request.cancelled:
                yield state.failure("Request cancelled", code="cancelled")
                return
            if state.error is not None:
                message, code = state.error
                logger.error(f"{self.name} reported an error: {message}")
                yield state.failure(message, code)
                return
            for event in self.finish(state):
                yield event
            done = state.done()
            record_usage(span, state.usage, request.model, done.finish_reason)
            yield done

    async def structured_output(
        self, request: ChatRequest, schema: dict[str, Any] | None = None,
    ) -> StructuredOutput:
        """Stream one reply constrained to *schema* and parse it as JSON.

        *schema* overrides ``request.response_schema``.

        Raises:
            StructuredOutputError: If the stream ends with an error event or
                the reply is not valid JSON.
        """
        if schema is not None:
            request = request.model_copy(update={"response_schema": schema})
        text = ""
        async for event in self.stream(request):
            if isinstance(event, ContentDelta):
                text = event.accumulated
            elif isinstance(event, ErrorEvent):
                raise StructuredOutputError(event.message, text)
        try:
            data = json.loads(text)
        except ValueError:
            preview = text[:200] + ("..." if len(text) > 200 else "")
            raise StructuredOutputError(
                f"Failed to parse structured output as JSON. Content: {preview}", text,
            ) from None
        return StructuredOutput(data=data, raw_text=text)

    async def _safe_close(self, raw: Any) -> None:
        try:
            await self.close_stream(raw)
        except Exception as e:
            logger.debug(f"Closing {self.name} stream raised: {e}")


# ---------------------------------------------------------------------------
# OpenAI chat-completions family
# ---------------------------------------------------------------------------

_OPENAI_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def _data_uri(source: ContentSource, mime_type: str) -> str:
    if source.type == "url":
        return source.value
    return f"data:{mime_type};base64,{source.value}"


class OpenAIProvider(ModelProvider):
    """Adapter for the OpenAI chat-completions streaming API.

    Tool-call arguments arrive as string fragments.  A fragment carrying an
    ``id`` starts or continues that call; id-less fragments continue the
    call last seen at their vendor ``index``.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        max_retries: int = 5,
    ):
        config = ProviderConfig(
            provider="openai", api_key=api_key, base_url=base_url,
            timeout=timeout, max_retries=max_retries,
        )
        self.client = AsyncOpenAI(
            api_key=config.resolved_api_key(),
            base_url=base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    # -- request ----------------------------------------------------------

    def format_part(self, part) -> dict:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.content}
        if isinstance(part, ImagePart):
            url = _data_uri(part.source, part.mime_type or "image/jpeg")
            return {"type": "image_url", "image_url": {"url": url}}
        if isinstance(part, AudioPart) and part.source.type == "data":
            audio_format = (part.mime_type or "audio/wav").split("/")[-1]
            if audio_format == "mpeg":
                audio_format = "mp3"
            return {
                "type": "input_audio",
                "input_audio": {"data": part.source.value, "format": audio_format},
            }
        raise UnsupportedContentError(part.type, self.name)

    def format_message(self, message: Message) -> dict:
        if message.role == MessageRole.TOOL:
            return {
                "role": "tool",
                "content": message.text,
                "tool_call_id": message.tool_call_id or "",
            }
        if isinstance(message.content, list):
            content: Any = [self.format_part(p) for p in message.content]
        else:
            content = message.content or ""
        formatted: dict[str, Any] = {"role": message.role.value, "content": content}
        if message.role == MessageRole.ASSISTANT and message.tool_calls:
            formatted["content"] = message.text or None
            formatted["tool_calls"] = [
                {
                    "id": tc.call_id,
                    "type": "function",
                    "function": {
                        "name": tc.function_name,
                        "arguments": tc.arguments_json or "{}",
                    },
                }
                for tc in message.tool_calls
            ]
        if message.name:
            formatted["name"] = message.name
        return formatted

    def build_params(self, request: ChatRequest) -> dict[str, Any]:
        options = request.options
        params: dict[str, Any] = {
            "model": request.model,
            "messages": [self.format_message(m) for m in request.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        for key in (
            "temperature", "max_tokens", "top_p", "stop",
            "frequency_penalty", "presence_penalty",
        ):
            value = getattr(options, key)
            if value is not None:
                params[key] = value
        if request.tools:
            params["tools"] = request.tools
            params["tool_choice"] = self.format_tool_choice(request.tool_choice)
        if request.response_schema is not None:
            params["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": request.response_schema},
            }
        params.update(request.provider_options)
        return params

    def format_tool_choice(self, tool_choice: str | None):
        if tool_choice is None or tool_choice in ("auto", "none", "required"):
            return tool_choice or "auto"
        return {"type": "function", "function": {"name": tool_choice}}

    async def open_stream(self, params: dict[str, Any]):
        return await self.client.chat.completions.create(**params)

    async def embed(
        self,
        input: str | list[str],
        model: str = DEFAULT_EMBEDDING_MODEL,
        dimensions: int | None = None,
    ) -> EmbeddingResult:
        """Embed one text or a batch of texts.

        Vendor errors propagate; there is no stream to report them on.
        """
        params: dict[str, Any] = {"model": model, "input": input}
        if dimensions is not None:
            params["dimensions"] = dimensions
        logger.debug(f"Requesting {self.name} embeddings from {model}")
        response = await self.client.embeddings.create(**params)
        usage = getattr(response, "usage", None)
        return EmbeddingResult(
            model=response.model,
            embeddings=[item.embedding for item in response.data],
            usage=Usage(
                prompt_tokens=usage.prompt_tokens or 0,
                total_tokens=usage.total_tokens or 0,
            ) if usage is not None else None,
        )

    # -- response ---------------------------------------------------------

    def translate(self, chunk, state: StreamState) -> Iterable[StreamEvent]:
        if getattr(chunk, "id", None):
            state.response_id = chunk.id
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            state.usage = Usage(
                prompt_tokens=usage.prompt_tokens or 0,
                completion_tokens=usage.completion_tokens or 0,
                total_tokens=usage.total_tokens or 0,
            )
        if not chunk.choices:
            return
        choice = chunk.choices[0]
        delta = choice.delta
        if delta is not None:
            reasoning = (
                getattr(delta, "reasoning_content", None)
                or getattr(delta, "reasoning", None)
            )
            if reasoning:
                yield state.thinking(reasoning)
            if delta.content:
                yield state.content(delta.content)
            for tc in delta.tool_calls or []:
                yield self._tool_call_fragment(tc, state)
        if choice.finish_reason:
            state.finish_reason = _OPENAI_FINISH_REASONS.get(
                choice.finish_reason, FinishReason.STOP,
            )

    def _tool_call_fragment(self, tc, state: StreamState) -> ToolCallFragment:
        vendor_index = tc.index or 0
        function = getattr(tc, "function", None)
        name = getattr(function, "name", None)
        arguments = getattr(function, "arguments", None) or ""
        call_id = state.call_ids.get(vendor_index)
        if tc.id and tc.id != call_id:
            # an unseen id at a known index starts a new call
            call_id = tc.id
            state.call_ids[vendor_index] = call_id
        elif call_id is None:
            call_id = state.tool_calls.synthesize_call_id(name)
            state.call_ids[vendor_index] = call_id
        record = state.tool_calls.get(call_id)
        if record is not None:
            index = record.index
        else:
            index = state.tool_calls.claim_index(vendor_index)
        return state.tool_call(call_id, index, name, arguments)


class OpenRouter(OpenAIProvider):

    name = "openrouter"

    def __init__(
        self, api_key: str | None = None, timeout: float = 180.0,
        max_retries: int = 5,
    ):
        config = ProviderConfig(provider="openrouter", api_key=api_key)
        self.client = AsyncOpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=config.resolved_api_key(),
            max_retries=max_retries,
            timeout=timeout,
        )


class OpenAICompatibleProvider(OpenAIProvider):
    """Any server speaking the OpenAI chat-completions protocol
    (Ollama, LM Studio, llama.cpp, ...)."""

    name = "openai_compatible"

    def __init__(
        self, base_url: str, api_key: str | None = None,
        timeout: float = 600.0, max_retries: int = 5,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            max_retries=max_retries,
            timeout=timeout,
        )


class VLLMProvider(OpenAICompatibleProvider):

    name = "vllm"

    def __init__(self, url: str, port: int = 8000, api_key: str | None = None):
        super().__init__(base_url=f"http://{url}:{port}/v1", api_key=api_key)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _openai(config: ProviderConfig) -> ModelProvider:
    return OpenAIProvider(
        api_key=config.api_key, base_url=config.base_url,
        timeout=config.timeout, max_retries=config.max_retries,
    )


def _openrouter(config: ProviderConfig) -> ModelProvider:
    return OpenRouter(
        api_key=config.api_key, timeout=config.timeout,
        max_retries=config.max_retries,
    )


def _compatible(config: ProviderConfig) -> ModelProvider:
    if not config.base_url:
        raise ProviderNotFoundError(f"provider '{config.provider}' requires base_url")
    return OpenAICompatibleProvider(
        base_url=config.base_url, api_key=config.api_key,
        timeout=config.timeout, max_retries=config.max_retries,
    )


def _anthropic(config: ProviderConfig) -> ModelProvider:
    from palaver.anthropic_provider import AnthropicProvider

    return AnthropicProvider(
        api_key=config.api_key, base_url=config.base_url,
        timeout=config.timeout, max_retries=config.max_retries,
    )


def _gemini(config: ProviderConfig) -> ModelProvider:
    from palaver.gemini_provider import GeminiProvider

    return GeminiProvider(api_key=config.api_key)


PROVIDERS = {
    "openai": _openai,
    "openrouter": _openrouter,
    "vllm": _compatible,
    "openai_compatible": _compatible,
    "anthropic": _anthropic,
    "gemini": _gemini,
}


def create_provider(config: ProviderConfig | str) -> ModelProvider:
    """Instantiate the adapter named by *config*."""
    if isinstance(config, str):
        if config not in PROVIDERS:
            raise ProviderNotFoundError(f"unknown provider '{config}'")
        config = ProviderConfig(provider=config)
    return PROVIDERS[config.provider](config)
