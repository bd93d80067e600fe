"""Google Gemini adapter (``google-genai``).

Gemini sends each function call as a complete argument object rather than
string fragments, sometimes without an id, and may report calls only in
the chunk that carries the finish reason.
"""

import base64
import json
import logging
from collections.abc import Iterable
from typing import Any

from google import genai

from palaver.config import ProviderConfig
from palaver.errors import UnsupportedContentError
from palaver.events import FinishReason, StreamEvent, Usage
from palaver.message import Message, MessageRole, TextPart
from palaver.provider import ModelProvider, StreamState
from palaver.request import ChatRequest

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPES = {
    "image": "image/jpeg",
    "audio": "audio/mp3",
    "video": "video/mp4",
    "document": "application/pdf",
}

_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
    "IMAGE_SAFETY": FinishReason.CONTENT_FILTER,
    "MALFORMED_FUNCTION_CALL": FinishReason.ERROR,
    "UNEXPECTED_TOOL_CALL": FinishReason.TOOL_CALLS,
}

_TOOL_MODES = {"auto": "AUTO", "required": "ANY", "none": "NONE"}


def _enum_name(value) -> str:
    return str(getattr(value, "value", value) or "")


class GeminiProvider(ModelProvider):

    name = "gemini"

    def __init__(self, api_key: str | None = None):
        config = ProviderConfig(provider="gemini", api_key=api_key)
        self.client = genai.Client(api_key=config.resolved_api_key())

    # -- request ----------------------------------------------------------

    def format_part(self, part) -> dict:
        if isinstance(part, TextPart):
            return {"text": part.content}
        if part.type not in DEFAULT_MIME_TYPES:
            raise UnsupportedContentError(part.type, self.name)
        mime_type = part.mime_type or DEFAULT_MIME_TYPES[part.type]
        if part.source.type == "data":
            return {
                "inline_data": {
                    "data": base64.b64decode(part.source.value),
                    "mime_type": mime_type,
                }
            }
        return {"file_data": {"file_uri": part.source.value, "mime_type": mime_type}}

    def format_contents(self, messages: list[Message]) -> list[dict]:
        # function_response parts are addressed by function name
        names_by_call_id: dict[str, str] = {}
        contents = []
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                continue
            parts: list[dict] = []
            if isinstance(message.content, list):
                parts.extend(self.format_part(p) for p in message.content)
            elif message.content and message.role != MessageRole.TOOL:
                parts.append({"text": message.content})
            for tc in message.tool_calls or ():
                names_by_call_id[tc.call_id] = tc.function_name
                try:
                    arguments = tc.parsed_arguments()
                except ValueError:
                    arguments = {}
                parts.append({
                    "function_call": {"name": tc.function_name, "args": arguments},
                })
            if message.role == MessageRole.TOOL:
                call_id = message.tool_call_id or ""
                parts.append({
                    "function_response": {
                        "name": message.name or names_by_call_id.get(call_id, call_id),
                        "response": {"content": message.text},
                    }
                })
            role = "model" if message.role == MessageRole.ASSISTANT else "user"
            contents.append({"role": role, "parts": parts or [{"text": ""}]})
        return contents

    def format_tools(self, tools: list[dict]) -> list[dict]:
        declarations = []
        for declaration in tools:
            function = declaration["function"]
            entry = {
                "name": function["name"],
                "description": function.get("description") or "",
            }
            parameters = function.get("parameters")
            if parameters and parameters.get("properties"):
                entry["parameters"] = parameters
            declarations.append(entry)
        return [{"function_declarations": declarations}]

    def build_params(self, request: ChatRequest) -> dict[str, Any]:
        options = request.options
        provider_options = dict(request.provider_options)
        config: dict[str, Any] = {}
        system_prompt = request.system_prompt()
        if system_prompt:
            config["system_instruction"] = system_prompt
        if options.temperature is not None:
            config["temperature"] = options.temperature
        if options.top_p is not None:
            config["top_p"] = options.top_p
        if options.max_tokens is not None:
            config["max_output_tokens"] = options.max_tokens
        if options.stop:
            config["stop_sequences"] = options.stop
        if request.tools:
            config["tools"] = self.format_tools(request.tools)
            choice = request.tool_choice or "auto"
            calling: dict[str, Any] = {"mode": _TOOL_MODES.get(choice, "ANY")}
            if choice not in _TOOL_MODES:
                calling["allowed_function_names"] = [choice]
            config["tool_config"] = {"function_calling_config": calling}
        if request.response_schema is not None:
            config["response_mime_type"] = "application/json"
            config["response_schema"] = request.response_schema
        config.update(provider_options.pop("generation_config", {}))
        config.update(provider_options)
        return {
            "model": request.model,
            "contents": self.format_contents(request.messages),
            "config": config,
        }

    async def open_stream(self, params: dict[str, Any]):
        return await self.client.aio.models.generate_content_stream(**params)

    # -- response ---------------------------------------------------------

    def translate(self, chunk, state: StreamState) -> Iterable[StreamEvent]:
        if getattr(chunk, "response_id", None):
            state.response_id = chunk.response_id
        metadata = getattr(chunk, "usage_metadata", None)
        if metadata is not None:
            state.usage = Usage(
                prompt_tokens=metadata.prompt_token_count or 0,
                completion_tokens=metadata.candidates_token_count or 0,
                total_tokens=metadata.total_token_count or 0,
            )

        candidates = getattr(chunk, "candidates", None) or []
        if not candidates:
            feedback = getattr(chunk, "prompt_feedback", None)
            if feedback is not None and getattr(feedback, "block_reason", None):
                state.finish_reason = FinishReason.CONTENT_FILTER
            return
        candidate = candidates[0]
        finish = _enum_name(getattr(candidate, "finish_reason", None))
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            if part.text:
                if getattr(part, "thought", False):
                    yield state.thinking(part.text)
                else:
                    yield state.content(part.text)
            if part.function_call:
                if finish:
                    logger.debug(
                        f"Synthesizing tool call {part.function_call.name} "
                        f"from terminal chunk ({finish})"
                    )
                yield self._function_call(part.function_call, state)

        if finish:
            reason = _FINISH_REASONS.get(finish, FinishReason.STOP)
            if reason == FinishReason.STOP and len(state.tool_calls):
                reason = FinishReason.TOOL_CALLS
            if reason == FinishReason.TOOL_CALLS and not len(state.tool_calls):
                reason = FinishReason.ERROR
            state.finish_reason = reason

    def _function_call(self, function_call, state: StreamState):
        args = function_call.args or {}
        arguments = args if isinstance(args, str) else json.dumps(dict(args))
        call_id = getattr(function_call, "id", None)
        record = state.tool_calls.get(call_id) if call_id else None
        if record is not None:
            return state.tool_call(call_id, record.index, function_call.name, arguments)
        call_id = call_id or state.tool_calls.synthesize_call_id(function_call.name)
        return state.tool_call(
            call_id, state.tool_calls.next_index(), function_call.name, arguments,
        )
