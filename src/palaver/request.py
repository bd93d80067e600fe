from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from palaver.cancellation import CancelToken
from palaver.message import Message


class GenerationOptions(BaseModel):
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = None
    stop: list[str] | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None


class ChatRequest(BaseModel):
    """Everything an adapter needs for one streaming call.

    Args:
        model: Vendor model identifier.
        messages: Conversation so far, oldest first.
        tools: Tool declarations in OpenAI function format
            (``{"type": "function", "function": {...}}``).
        tool_choice: ``"auto"``, ``"none"``, ``"required"`` or a tool name.
        options: Common generation parameters.
        provider_options: Merged verbatim into the vendor call.
        response_schema: JSON Schema the reply must follow; mapped to the
            vendor's JSON output mode.
        cancel_token: Cancels the in-flight call when triggered.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str = Field(min_length=1)
    messages: list[Message]
    tools: list[dict] | None = None
    tool_choice: str | None = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    provider_options: dict[str, Any] = Field(default_factory=dict)
    response_schema: dict[str, Any] | None = None
    cancel_token: CancelToken | None = Field(default=None, exclude=True)

    @field_validator("messages")
    @classmethod
    def _require_messages(cls, messages: list[Message]) -> list[Message]:
        if not messages:
            raise ValueError("a chat request needs at least one message")
        return messages

    @field_validator("tools")
    @classmethod
    def _check_tool_shape(cls, tools: list[dict] | None) -> list[dict] | None:
        for declaration in tools or []:
            function = declaration.get("function")
            if not isinstance(function, dict) or not function.get("name"):
                raise ValueError(
                    "tool declarations must look like "
                    "{'type': 'function', 'function': {'name': ...}}"
                )
        return tools

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled

    def system_prompt(self) -> str | None:
        """Concatenated text of all system messages, or ``None``."""
        texts = [m.text for m in self.messages if m.role.value == "system"]
        return "\n".join(texts) if texts else None
