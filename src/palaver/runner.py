import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum

from palaver.cancellation import CancelToken
from palaver.context import Context
from palaver.errors import ArgumentParseError, ToolExecutionError, ToolNotFoundError
from palaver.events import (
    CancelledEvent,
    ContentDelta,
    ErrorEvent,
    FinishReason,
    RunCompleteEvent,
    StreamEvent,
    TERMINAL_EVENTS,
    ThinkingDelta,
    ToolCallFragment,
    ToolResultEvent,
)
from palaver.instrumentation import record_error, record_run_outcome, run_span, tool_span
from palaver.message import Message, ThinkingBlock, assistant, tool_result
from palaver.provider import ModelProvider
from palaver.request import ChatRequest
from palaver.session import Session
from palaver.streaming import ToolCallAccumulator, ToolCallRecord
from palaver.tools import LLMRecoverableError, Tool

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class LoopState:
    """State of one agent-loop invocation.  Owned by the Runner."""

    messages: list[Message]
    max_iterations: int
    cancel_token: CancelToken = field(default_factory=CancelToken)
    iteration: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled


@dataclass
class RunResult:
    """The result of a single Runner.run() invocation."""

    status: RunStatus
    messages: list[Message]
    iterations: int
    last_message: Message | None = None
    error: ErrorEvent | None = None


@dataclass
class _ToolOutcome:
    """Result of executing a single tool call."""

    output: str
    is_error: bool


class Runner:
    """Drives the model → tools → model loop over a provider adapter.

    Each iteration streams one provider call, forwarding every canonical
    event to the caller while accumulating tool calls.  A turn that ends
    with ``finish_reason == tool_calls`` has its calls executed in
    ``index`` order and their results appended as ``tool`` messages before
    the model is called again.  The loop ends on any other finish reason,
    when ``max_iterations`` tool rounds have run, on a transport error, or
    on cancellation.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        max_iterations: Maximum number of tool-execution rounds.  Reaching
            it completes the run normally.
        parallel_tool_calls: Execute the calls of one round concurrently.
            Results are still appended in ``index`` order.
    """

    def __init__(self, max_iterations: int = 10, parallel_tool_calls: bool = False):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.max_iterations = max_iterations
        self.parallel_tool_calls = parallel_tool_calls

    async def run(
        self,
        provider: ModelProvider,
        request: ChatRequest,
        tools: list[Tool] | None = None,
        session: Session | None = None,
        cancel_token: CancelToken | None = None,
    ) -> RunResult:
        """Run the agent loop to completion and return its result."""
        result: RunResult | None = None
        async for event in self.iter(provider, request, tools, session, cancel_token):
            if isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    async def iter(
        self,
        provider: ModelProvider,
        request: ChatRequest,
        tools: list[Tool] | None = None,
        session: Session | None = None,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the agent loop, yielding events as execution proceeds."""
        token = cancel_token or request.cancel_token or CancelToken()
        registry = {t.name: t for t in tools or []}
        declarations = request.tools or [t.model_dump() for t in registry.values()] or None
        state = LoopState(
            messages=list(request.messages),
            max_iterations=self.max_iterations,
            cancel_token=token,
        )
        ctx = Context(state=state, request=request, session=session)
        session_id = session.session_id if session else None

        async with run_span(provider.name, request.model, session_id) as span:
            while True:
                if state.cancelled:
                    yield _cancelled_event(state)
                    result = self._finish(state, RunStatus.CANCELLED)
                    break

                turn = request.model_copy(update={
                    "messages": list(state.messages),
                    "tools": declarations,
                    "cancel_token": token,
                })
                acc = ToolCallAccumulator()
                content = ""
                thinking: list[ThinkingBlock] = []
                thought = ""
                terminal = None
                stream = provider.stream(turn)
                try:
                    async for event in stream:
                        if state.cancelled:
                            break
                        if isinstance(event, ContentDelta):
                            content = event.accumulated
                        elif isinstance(event, ToolCallFragment):
                            acc.feed(event)
                        elif isinstance(event, ThinkingDelta):
                            if event.redacted:
                                thinking.append(ThinkingBlock(redacted=event.redacted))
                            else:
                                thought += event.content
                                if event.signature:
                                    thinking.append(
                                        ThinkingBlock(text=thought, signature=event.signature)
                                    )
                                    thought = ""
                        if isinstance(event, TERMINAL_EVENTS):
                            terminal = event
                        yield event
                finally:
                    await stream.aclose()

                if state.cancelled:
                    yield _cancelled_event(state)
                    result = self._finish(state, RunStatus.CANCELLED)
                    break

                if terminal is None or isinstance(terminal, ErrorEvent):
                    message = terminal.message if terminal else "stream ended without a terminal event"
                    logger.error(f"Run failed on iteration {state.iteration}: {message}")
                    result = self._finish(state, RunStatus.FAILED, error=terminal)
                    break

                if thought:
                    thinking.append(ThinkingBlock(text=thought))
                calls = acc.finalize()
                if terminal.finish_reason != FinishReason.TOOL_CALLS or not calls:
                    state.messages.append(assistant(content, thinking=thinking))
                    result = self._finish(state, RunStatus.COMPLETE)
                    break

                state.messages.append(assistant(content, tool_calls=calls, thinking=thinking))
                async for event in self._execute_tools(calls, registry, ctx):
                    yield event
                if state.cancelled:
                    yield _cancelled_event(state)
                    result = self._finish(state, RunStatus.CANCELLED)
                    break

                state.iteration += 1
                if state.iteration >= state.max_iterations:
                    logger.info(f"Reached max_iterations={state.max_iterations}")
                    result = self._finish(state, RunStatus.COMPLETE)
                    break

            record_run_outcome(span, result.status.value, result.iterations)
        yield RunCompleteEvent(result=result)

    def _finish(
        self, state: LoopState, status: RunStatus, error: ErrorEvent | None = None,
    ) -> RunResult:
        return RunResult(
            status=status,
            messages=list(state.messages),
            iterations=state.iteration,
            last_message=state.messages[-1] if state.messages else None,
            error=error,
        )

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_tools(
        self, calls: list[ToolCallRecord], registry: dict[str, Tool], ctx: Context,
    ) -> AsyncIterator[ToolResultEvent]:
        if self.parallel_tool_calls and len(calls) > 1:
            runner = self._execute_parallel(calls, registry, ctx)
        else:
            runner = self._execute_sequential(calls, registry, ctx)
        async for event in runner:
            yield event

    async def _execute_sequential(self, calls, registry, ctx):
        for tc in calls:
            if ctx.cancelled:
                return
            outcome = await self._execute_one(tc, registry, ctx)
            if ctx.cancelled:
                return
            yield self._record(tc, outcome, ctx)

    async def _execute_parallel(self, calls, registry, ctx):
        if ctx.cancelled:
            return

        async def run_one(position: int, tc: ToolCallRecord):
            return position, await self._execute_one(tc, registry, ctx)

        tasks = [
            asyncio.ensure_future(run_one(position, tc))
            for position, tc in enumerate(calls)
        ]
        # Results arrive in completion order and are released in call order.
        buffer: dict[int, _ToolOutcome] = {}
        released = 0
        try:
            for next_done in asyncio.as_completed(tasks):
                position, outcome = await next_done
                if ctx.cancelled:
                    break
                buffer[position] = outcome
                while released in buffer:
                    yield self._record(calls[released], buffer.pop(released), ctx)
                    released += 1
        finally:
            # In-flight executors run to completion; their results are dropped.
            await asyncio.gather(*tasks, return_exceptions=True)

    def _record(self, tc: ToolCallRecord, outcome: _ToolOutcome, ctx: Context) -> ToolResultEvent:
        ctx.state.messages.append(
            tool_result(tc.call_id, outcome.output, name=tc.function_name)
        )
        return ToolResultEvent(
            call_id=tc.call_id, tool_name=tc.function_name,
            output=outcome.output, is_error=outcome.is_error, index=tc.index,
        )

    async def _execute_one(
        self, tc: ToolCallRecord, registry: dict[str, Tool], ctx: Context,
    ) -> _ToolOutcome:
        async with tool_span(tc.function_name, tc.call_id) as span:
            tool_obj = registry.get(tc.function_name)
            if tool_obj is None:
                logger.warning(f"Tool not found: {tc.function_name}")
                return _ToolOutcome(
                    output=f"Error: {ToolNotFoundError(tc.function_name)}", is_error=True,
                )

            try:
                params = tc.parsed_arguments()
            except ValueError as e:
                error = ArgumentParseError(tc.function_name, str(e))
                logger.warning(f"Invalid arguments for {tc.function_name}: {e}")
                return _ToolOutcome(output=f"Error: {error}", is_error=True)

            logger.info(f"Calling {tc.function_name} with {params}")
            if tool_obj.accepts_context:
                params["context"] = ctx

            try:
                result = await tool_obj(**params)
            except LLMRecoverableError as e:
                logger.info(f"Tool {tc.function_name} requested retry: {e}")
                return _ToolOutcome(output=str(e), is_error=False)
            except Exception as e:
                error = ToolExecutionError(tc.function_name, e)
                logger.error(f"Tool {tc.function_name} raised: {e}")
                record_error(span, error)
                return _ToolOutcome(output=str(error), is_error=True)

        output = result.output
        if not isinstance(output, str):
            output = json.dumps(output, default=str)
        return _ToolOutcome(output=output, is_error=False)


def _cancelled_event(state: LoopState) -> CancelledEvent:
    logger.info(f"Run cancelled on iteration {state.iteration}")
    return CancelledEvent(iteration=state.iteration, reason=state.cancel_token.reason)
