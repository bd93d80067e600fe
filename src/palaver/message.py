from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from palaver.streaming import ToolCallRecord


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------

class ContentSource(BaseModel):
    """Where an attachment's bytes live: inline base64 ``data`` or a ``url``."""

    type: Literal["data", "url"]
    value: str


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    content: str


class _MediaPart(BaseModel):
    source: ContentSource
    mime_type: str | None = None


class ImagePart(_MediaPart):
    type: Literal["image"] = "image"


class AudioPart(_MediaPart):
    type: Literal["audio"] = "audio"


class VideoPart(_MediaPart):
    type: Literal["video"] = "video"


class DocumentPart(_MediaPart):
    type: Literal["document"] = "document"


ContentPart = Annotated[
    Union[TextPart, ImagePart, AudioPart, VideoPart, DocumentPart],
    Field(discriminator="type"),
]


class ThinkingBlock(BaseModel):
    """Reasoning kept on an assistant turn so it can be sent back verbatim."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    signature: str | None = None
    redacted: str | None = None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """One conversation turn.

    Messages are frozen: the runner appends new messages for new turns
    and never edits one in place.
    """

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str | list[ContentPart] | None = ""
    tool_calls: tuple[ToolCallRecord, ...] | None = None
    thinking: tuple[ThinkingBlock, ...] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls, _info) -> list[dict] | None:
        if tool_calls is None:
            return None
        return [
            {
                "id": t.call_id,
                "type": "function",
                "function": {
                    "name": t.function_name,
                    "arguments": t.arguments_json,
                },
            }
            for t in tool_calls
        ]

    @field_validator("tool_calls", mode="before")
    @classmethod
    def parse_tool_calls(cls, tool_calls):
        if not tool_calls:
            return tool_calls
        return tuple(
            ToolCallRecord(
                call_id=t["id"],
                function_name=t["function"]["name"],
                arguments_json=t["function"].get("arguments") or "",
                index=position,
            )
            if isinstance(t, dict) and "function" in t else t
            for position, t in enumerate(tool_calls)
        )

    @property
    def text(self) -> str:
        """Plain text of the message, ignoring non-text parts."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.content for p in self.content if isinstance(p, TextPart))


def system(content: str) -> Message:
    return Message(role=MessageRole.SYSTEM, content=content)


def user(content: str | list[ContentPart]) -> Message:
    return Message(role=MessageRole.USER, content=content)


def assistant(
    content: str | None = "",
    tool_calls: list[ToolCallRecord] | None = None,
    thinking: list[ThinkingBlock] | None = None,
) -> Message:
    return Message(
        role=MessageRole.ASSISTANT,
        content=content,
        tool_calls=tuple(tool_calls) if tool_calls else None,
        thinking=tuple(thinking) if thinking else None,
    )


def tool_result(call_id: str, content: str, name: str | None = None) -> Message:
    return Message(
        role=MessageRole.TOOL, content=content,
        tool_call_id=call_id, name=name,
    )
