"""Vendor-neutral streaming chat events and a tool-calling agent loop."""

from palaver.cancellation import CancelToken
from palaver.config import ProviderConfig
from palaver.events import (
    CancelledEvent,
    ContentDelta,
    DoneEvent,
    ErrorEvent,
    FinishReason,
    RunCompleteEvent,
    StreamEvent,
    ThinkingDelta,
    ToolCallFragment,
    ToolResultEvent,
    Usage,
)
from palaver.instrumentation import instrument, uninstrument
from palaver.message import Message, MessageRole, ThinkingBlock
from palaver.provider import (
    EmbeddingResult,
    ModelProvider,
    StructuredOutput,
    create_provider,
)
from palaver.request import ChatRequest, GenerationOptions
from palaver.runner import LoopState, Runner, RunResult, RunStatus
from palaver.session import Session
from palaver.sse import DONE_MARKER, SSE_HEADERS, encode_event, sse_generator
from palaver.streaming import ToolCallAccumulator, ToolCallRecord
from palaver.tools import LLMRecoverableError, Tool, tool

__all__ = [
    "CancelToken",
    "CancelledEvent",
    "ChatRequest",
    "ContentDelta",
    "DONE_MARKER",
    "DoneEvent",
    "EmbeddingResult",
    "ErrorEvent",
    "FinishReason",
    "GenerationOptions",
    "LLMRecoverableError",
    "LoopState",
    "Message",
    "MessageRole",
    "ModelProvider",
    "ProviderConfig",
    "RunCompleteEvent",
    "RunResult",
    "RunStatus",
    "Runner",
    "SSE_HEADERS",
    "Session",
    "StreamEvent",
    "StructuredOutput",
    "ThinkingBlock",
    "ThinkingDelta",
    "Tool",
    "ToolCallAccumulator",
    "ToolCallFragment",
    "ToolCallRecord",
    "ToolResultEvent",
    "Usage",
    "create_provider",
    "encode_event",
    "instrument",
    "sse_generator",
    "tool",
    "uninstrument",
]
