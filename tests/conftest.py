import json
from dataclasses import dataclass, field
from typing import Any

import pytest

from palaver.cancellation import CancelToken
from palaver.events import FinishReason
from palaver.provider import ModelProvider, StreamState
from palaver.request import ChatRequest
from palaver.tools import tool


# ---------------------------------------------------------------------------
# Fake vendor stream (mirrors the SDKs' async stream objects)
# ---------------------------------------------------------------------------

class FakeAsyncStream:
    """Async-iterable stand-in for an SDK stream.

    ``raise_after`` raises ``error`` once that many chunks were served.
    ``on_chunk`` runs before each chunk is handed out.
    """

    def __init__(self, chunks, error: Exception | None = None,
                 raise_after: int | None = None, on_chunk=None):
        self.chunks = list(chunks)
        self.error = error
        self.raise_after = raise_after
        self.on_chunk = on_chunk
        self.served = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        if self.error is not None and self.served == (self.raise_after or 0):
            raise self.error
        if self.served >= len(self.chunks):
            raise StopAsyncIteration
        if self.on_chunk is not None:
            self.on_chunk(self.served)
        chunk = self.chunks[self.served]
        self.served += 1
        return chunk

    async def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Scripted provider (no network)
# ---------------------------------------------------------------------------

class StubProvider(ModelProvider):
    """Provider that replays pre-queued turns.

    Each turn is a list of raw items:

    * ``("text", delta)``
    * ``("thinking", text)`` or ``("thinking", text, signature)``
    * ``("tool", call_id, name, arguments_fragment)``
    * ``("finish", reason)``
    * ``("error", message)``

    All the adapter guarantees come from :class:`ModelProvider.stream`.
    """

    name = "stub"

    def __init__(self, turns: list[list[tuple]] | None = None):
        self.turns: list[list[tuple]] = list(turns or [])
        self.call_log: list[ChatRequest] = []
        self.streams: list[FakeAsyncStream] = []
        self.on_chunk = None

    def build_params(self, request: ChatRequest) -> dict[str, Any]:
        self.call_log.append(request)
        return {}

    async def open_stream(self, params):
        turn = self.turns.pop(0) if self.turns else [("finish", "stop")]
        stream = FakeAsyncStream(turn, on_chunk=self.on_chunk)
        self.streams.append(stream)
        return stream

    def translate(self, item, state: StreamState):
        kind = item[0]
        if kind == "text":
            yield state.content(item[1])
        elif kind == "thinking":
            yield state.thinking(item[1], *item[2:])
        elif kind == "tool":
            _, call_id, name, arguments = item
            record = state.tool_calls.get(call_id)
            index = record.index if record else state.tool_calls.next_index()
            yield state.tool_call(call_id, index, name, arguments)
        elif kind == "finish":
            state.finish_reason = FinishReason(item[1])
        elif kind == "error":
            state.error = (item[1], "stub_error")


def text_turn(*deltas: str) -> list[tuple]:
    return [("text", d) for d in deltas] + [("finish", "stop")]


def tool_turn(name: str, args: dict, call_id: str = "call_1") -> list[tuple]:
    return [("tool", call_id, name, json.dumps(args)), ("finish", "tool_calls")]


def multi_tool_turn(calls: list[tuple[str, dict, str]]) -> list[tuple]:
    items = [("tool", call_id, name, json.dumps(args)) for name, args, call_id in calls]
    return items + [("finish", "tool_calls")]


def make_request(content: str = "hi", **kwargs) -> ChatRequest:
    return ChatRequest(
        model=kwargs.pop("model", "stub-model"),
        messages=[{"role": "user", "content": content}],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# OpenAI chunk shapes
# ---------------------------------------------------------------------------

@dataclass
class FakeFunctionDelta:
    name: str | None = None
    arguments: str | None = None


@dataclass
class FakeToolCallDelta:
    index: int
    id: str | None = None
    function: FakeFunctionDelta | None = None
    type: str | None = "function"


@dataclass
class FakeDelta:
    content: str | None = None
    role: str | None = None
    tool_calls: list[FakeToolCallDelta] | None = None


@dataclass
class FakeChoice:
    delta: FakeDelta = field(default_factory=FakeDelta)
    finish_reason: str | None = None
    index: int = 0


@dataclass
class FakeUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class FakeChunk:
    id: str = "chatcmpl-1"
    model: str = "gpt-4o"
    choices: list[FakeChoice] = field(default_factory=list)
    usage: FakeUsage | None = None


def openai_text(content: str) -> FakeChunk:
    return FakeChunk(choices=[FakeChoice(delta=FakeDelta(content=content))])


def openai_tool(index: int, call_id: str | None = None, name: str | None = None,
                arguments: str | None = None) -> FakeChunk:
    tc = FakeToolCallDelta(
        index=index, id=call_id,
        function=FakeFunctionDelta(name=name, arguments=arguments),
    )
    return FakeChunk(choices=[FakeChoice(delta=FakeDelta(tool_calls=[tc]))])


def openai_finish(reason: str) -> FakeChunk:
    return FakeChunk(choices=[FakeChoice(finish_reason=reason)])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def stub_provider():
    return StubProvider()


@pytest.fixture
def cancel_token():
    return CancelToken()


@tool
def echo(text: str):
    """Echo the input text."""
    return text


@tool
def calc(e: str):
    """Evaluate a simple arithmetic expression.

    Args:
        e: Expression such as ``2+2``.
    """
    left, _, right = e.partition("+")
    return str(int(left) + int(right))


@pytest.fixture
def calc_tool():
    return calc


@pytest.fixture
def echo_tool():
    return echo
