"""Anthropic Messages API adapter.

Tool-use input arrives as ``input_json_delta`` string fragments addressed
by content-block index; the block's ``content_block_start`` carries the
call id and tool name.
"""

import json
import logging
from collections.abc import Iterable
from typing import Any

from anthropic import AsyncAnthropic

from palaver.config import ProviderConfig
from palaver.errors import UnsupportedContentError, UnsupportedFeatureError
from palaver.events import FinishReason, StreamEvent, Usage
from palaver.message import DocumentPart, ImagePart, Message, MessageRole, TextPart
from palaver.provider import ModelProvider, StreamState
from palaver.request import ChatRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024

_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "tool_use": FinishReason.TOOL_CALLS,
    "max_tokens": FinishReason.LENGTH,
    "refusal": FinishReason.CONTENT_FILTER,
}


class AnthropicProvider(ModelProvider):

    name = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        max_retries: int = 5,
    ):
        config = ProviderConfig(provider="anthropic", api_key=api_key)
        kwargs: dict[str, Any] = {
            "api_key": config.resolved_api_key(),
            "timeout": timeout,
            "max_retries": max_retries,
        }
        if base_url:
            kwargs["base_url"] = base_url
        self.client = AsyncAnthropic(**kwargs)

    # -- request ----------------------------------------------------------

    def format_part(self, part) -> dict:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.content}
        if isinstance(part, (ImagePart, DocumentPart)):
            default_mime = "image/jpeg" if part.type == "image" else "application/pdf"
            if part.source.type == "url":
                source = {"type": "url", "url": part.source.value}
            else:
                source = {
                    "type": "base64",
                    "media_type": part.mime_type or default_mime,
                    "data": part.source.value,
                }
            return {"type": part.type, "source": source}
        raise UnsupportedContentError(part.type, self.name)

    def format_content(self, message: Message) -> list[dict]:
        if message.role == MessageRole.TOOL:
            return [{
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.text,
            }]
        blocks: list[dict] = []
        for thought in message.thinking or ():
            if thought.redacted:
                blocks.append({"type": "redacted_thinking", "data": thought.redacted})
            elif thought.signature:
                blocks.append({
                    "type": "thinking",
                    "thinking": thought.text,
                    "signature": thought.signature,
                })
        if isinstance(message.content, list):
            blocks.extend(self.format_part(p) for p in message.content)
        elif message.content:
            blocks.append({"type": "text", "text": message.content})
        for tc in message.tool_calls or ():
            try:
                arguments = tc.parsed_arguments()
            except ValueError:
                arguments = {}
            blocks.append({
                "type": "tool_use",
                "id": tc.call_id,
                "name": tc.function_name,
                "input": arguments,
            })
        return blocks

    def format_messages(self, messages: list[Message]) -> list[dict]:
        """Convert the transcript, folding consecutive same-role turns.

        Anthropic only knows ``user`` and ``assistant``; tool results travel
        as ``tool_result`` blocks in a user turn, and all results answering
        one assistant turn must share a single user message.
        """
        formatted: list[dict] = []
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                continue
            role = "assistant" if message.role == MessageRole.ASSISTANT else "user"
            blocks = self.format_content(message)
            if not blocks:
                continue
            if formatted and formatted[-1]["role"] == role:
                formatted[-1]["content"].extend(blocks)
            else:
                formatted.append({"role": role, "content": blocks})
        return formatted

    def format_tools(self, tools: list[dict]) -> list[dict]:
        converted = []
        for declaration in tools:
            function = declaration["function"]
            converted.append({
                "name": function["name"],
                "description": function.get("description") or "",
                "input_schema": function.get("parameters")
                or {"type": "object", "properties": {}},
            })
        return converted

    def format_tool_choice(self, tool_choice: str | None) -> dict:
        if tool_choice in (None, "auto"):
            return {"type": "auto"}
        if tool_choice == "required":
            return {"type": "any"}
        if tool_choice == "none":
            return {"type": "none"}
        return {"type": "tool", "name": tool_choice}

    def build_params(self, request: ChatRequest) -> dict[str, Any]:
        options = request.options
        if request.response_schema is not None:
            raise UnsupportedFeatureError("response_schema", self.name)
        params: dict[str, Any] = {
            "model": request.model,
            "messages": self.format_messages(request.messages),
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        system_prompt = request.system_prompt()
        if system_prompt:
            params["system"] = system_prompt
        if options.temperature is not None:
            params["temperature"] = options.temperature
        if options.top_p is not None:
            params["top_p"] = options.top_p
        if options.stop:
            params["stop_sequences"] = options.stop
        if request.tools:
            params["tools"] = self.format_tools(request.tools)
            params["tool_choice"] = self.format_tool_choice(request.tool_choice)
        params.update(request.provider_options)
        return params

    async def open_stream(self, params: dict[str, Any]):
        return await self.client.messages.create(**params)

    # -- response ---------------------------------------------------------

    def translate(self, event, state: StreamState) -> Iterable[StreamEvent]:
        kind = event.type
        if kind == "message_start":
            message = event.message
            state.response_id = message.id
            usage = getattr(message, "usage", None)
            if usage is not None:
                state.usage = Usage(prompt_tokens=usage.input_tokens or 0)
        elif kind == "content_block_start":
            block = event.content_block
            if block.type == "tool_use":
                call_id = block.id or state.tool_calls.synthesize_call_id(block.name)
                state.call_ids[event.index] = call_id
                initial = block.input if isinstance(block.input, dict) else {}
                if initial:
                    state.pending_arguments[event.index] = json.dumps(initial)
                yield state.tool_call(
                    call_id, state.tool_calls.next_index(), block.name, "",
                )
            elif block.type == "text" and getattr(block, "text", ""):
                yield state.content(block.text)
            elif block.type == "thinking" and getattr(block, "thinking", ""):
                yield state.thinking(block.thinking)
            elif block.type == "redacted_thinking":
                yield state.thinking("", redacted=block.data)
        elif kind == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                yield state.content(delta.text)
            elif delta.type == "thinking_delta":
                yield state.thinking(delta.thinking)
            elif delta.type == "signature_delta":
                yield state.thinking("", signature=delta.signature)
            elif delta.type == "input_json_delta":
                call_id = state.call_ids.get(event.index)
                record = state.tool_calls.get(call_id) if call_id else None
                if record is None:
                    logger.warning(
                        f"input_json_delta for unknown content block {event.index}"
                    )
                elif delta.partial_json:
                    # streamed input replaces the object sent with the block start
                    state.pending_arguments.pop(event.index, None)
                    yield state.tool_call(
                        call_id, record.index, None, delta.partial_json,
                    )
        elif kind == "content_block_stop":
            yield from self._flush_arguments(state, event.index)
        elif kind == "message_delta":
            stop_reason = getattr(event.delta, "stop_reason", None)
            if stop_reason:
                state.finish_reason = _STOP_REASONS.get(stop_reason, FinishReason.STOP)
            usage = getattr(event, "usage", None)
            if usage is not None:
                prompt = state.usage.prompt_tokens if state.usage else 0
                completion = usage.output_tokens or 0
                state.usage = Usage(
                    prompt_tokens=prompt,
                    completion_tokens=completion,
                    total_tokens=prompt + completion,
                )
        elif kind == "error":
            error = event.error
            state.error = (
                getattr(error, "message", None) or str(error),
                getattr(error, "type", None),
            )

    def finish(self, state: StreamState) -> Iterable[StreamEvent]:
        for block_index in list(state.pending_arguments):
            yield from self._flush_arguments(state, block_index)

    def _flush_arguments(self, state: StreamState, block_index: int) -> Iterable[StreamEvent]:
        arguments = state.pending_arguments.pop(block_index, None)
        if arguments is None:
            return
        call_id = state.call_ids[block_index]
        record = state.tool_calls.get(call_id)
        yield state.tool_call(call_id, record.index, None, arguments)
