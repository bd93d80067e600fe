"""Canonical streaming events.

Provider adapters yield the five canonical events (:class:`ContentDelta`,
:class:`ThinkingDelta`, :class:`ToolCallFragment`, :class:`DoneEvent`,
:class:`ErrorEvent`).  The :class:`~palaver.runner.Runner` forwards them and
adds the loop-level events (:class:`ToolResultEvent`,
:class:`CancelledEvent`, :class:`RunCompleteEvent`).

Every event has a ``type`` tag and serializes through :meth:`to_dict`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class StreamEvent:
    """Base for all streaming events."""

    type: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return {"type": self.type, **data}


# ---------------------------------------------------------------------------
# Canonical events (emitted by provider adapters)
# ---------------------------------------------------------------------------

@dataclass
class ContentDelta(StreamEvent):
    """A text delta.  ``accumulated`` is all text seen so far in the stream."""

    type: ClassVar[str] = "content"

    id: str
    model: str
    timestamp: float
    delta: str
    accumulated: str
    role: str = "assistant"


@dataclass
class ThinkingDelta(StreamEvent):
    """Reasoning trace text, for providers that expose one.

    Anthropic closes each thinking block with a ``signature`` and may send
    encrypted ``redacted`` blocks; both must be replayed on the next turn.
    """

    type: ClassVar[str] = "thinking"

    content: str
    id: str = ""
    model: str = ""
    timestamp: float = 0.0
    signature: str | None = None
    redacted: str | None = None


@dataclass
class ToolCallFragment(StreamEvent):
    """A piece of a tool call.

    ``arguments_fragment`` is either a raw JSON text fragment (to be
    concatenated) or a complete JSON object (to be shallow-merged); see
    :func:`palaver.streaming.merge_arguments`.
    """

    type: ClassVar[str] = "tool_call"

    id: str
    model: str
    timestamp: float
    call_id: str
    index: int
    arguments_fragment: str = ""
    function_name: str | None = None


@dataclass
class DoneEvent(StreamEvent):
    type: ClassVar[str] = "done"

    id: str
    model: str
    timestamp: float
    finish_reason: FinishReason = FinishReason.STOP
    usage: Usage | None = None


@dataclass
class ErrorEvent(StreamEvent):
    type: ClassVar[str] = "error"

    id: str
    model: str
    timestamp: float
    message: str
    code: str | None = None


TERMINAL_EVENTS = (DoneEvent, ErrorEvent)


# ---------------------------------------------------------------------------
# Loop events (emitted by the Runner)
# ---------------------------------------------------------------------------

@dataclass
class ToolResultEvent(StreamEvent):
    """A tool finished and its result was appended to the transcript."""

    type: ClassVar[str] = "tool_result"

    call_id: str
    tool_name: str
    output: str
    is_error: bool = False
    index: int = 0


@dataclass
class CancelledEvent(StreamEvent):
    """The run was cancelled.  Never reported as an :class:`ErrorEvent`."""

    type: ClassVar[str] = "cancelled"

    iteration: int = 0
    reason: str | None = None


@dataclass
class RunCompleteEvent(StreamEvent):
    """Final event, always the last one yielded by ``Runner.iter()``."""

    type: ClassVar[str] = "run_complete"

    result: Any = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        if self.result is None:
            return {"type": self.type}
        return {
            "type": self.type,
            "status": self.result.status.value,
            "iterations": self.result.iterations,
        }
