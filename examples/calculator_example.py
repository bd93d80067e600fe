"""Tool-calling example: a calculator assistant streamed as SSE.

Demonstrates:
- Defining tools with @tool (including a context-aware tool)
- Choosing a provider adapter from a ProviderConfig
- Streaming a Runner loop through the SSE bridge
- Cancelling a slow reply through a CancelToken (--timeout)

Usage:
    uv run --env-file=.env examples/calculator_example.py --provider openai --model gpt-4o-mini
    uv run --env-file=.env examples/calculator_example.py --provider anthropic --model claude-sonnet-4-5 --sse
    uv run examples/calculator_example.py --provider vllm --base-url http://localhost:8000/v1 --model Qwen/Qwen3-8B --trace
"""

import argparse
import asyncio
import logging
import operator
import uuid

from palaver.cancellation import CancelToken
from palaver.config import ProviderConfig
from palaver.context import Context
from palaver.events import ContentDelta, RunCompleteEvent, ToolResultEvent
from palaver.message import system, user
from palaver.provider import create_provider
from palaver.request import ChatRequest
from palaver.runner import Runner
from palaver.session import Session
from palaver.sse import sse_generator
from palaver.tools import LLMRecoverableError, tool

OPERATORS = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
}


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        ConsoleSpanExporter, SimpleSpanProcessor,
    )
    from palaver.instrumentation import instrument

    provider = TracerProvider(resource=Resource({SERVICE_NAME: service_name}))
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


@tool
def calculate(left: float, op: str, right: float):
    """Apply a binary arithmetic operator.

    Args:
        left: Left operand.
        op: One of ``+``, ``-``, ``*`` or ``/``.
        right: Right operand.
    """
    if op not in OPERATORS:
        raise LLMRecoverableError(f"Unknown operator {op!r}; use one of {list(OPERATORS)}")
    if op == "/" and right == 0:
        raise LLMRecoverableError("Division by zero; ask the user for another divisor.")
    return OPERATORS[op](left, right)


@tool
def remember(context: Context, name: str, value: float):
    """Store a value under a name for later turns."""
    context.session.metadata.setdefault("memory", {})[name] = value
    return f"Stored {name} = {value}."


@tool
def recall(context: Context, name: str):
    """Look up a previously stored value."""
    memory = context.session.metadata.get("memory", {})
    if name not in memory:
        return f"Nothing stored under '{name}'."
    return memory[name]


TOOLS = [calculate, remember, recall]


async def keep_result(events, results):
    async for event in events:
        if isinstance(event, RunCompleteEvent):
            results.append(event.result)
        yield event


async def print_plain(events):
    async for event in events:
        if isinstance(event, ContentDelta):
            print(event.delta, end="", flush=True)
        elif isinstance(event, ToolResultEvent):
            print(f"\n  [{event.tool_name}] {event.output}")
    print()


async def print_sse(events, token):
    async for frame in sse_generator(events, token):
        print(frame, end="")


async def main():
    parser = argparse.ArgumentParser(description="Calculator assistant")
    parser.add_argument(
        "--provider", default="openai",
        choices=["openai", "openrouter", "vllm", "openai_compatible", "anthropic", "gemini"],
    )
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--base-url", default=None)
    parser.add_argument("--sse", action="store_true", help="print raw SSE frames")
    parser.add_argument("--parallel", action="store_true")
    parser.add_argument("--timeout", type=float, default=60.0, help="cancel a reply after N seconds")
    parser.add_argument("--trace", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if args.trace:
        setup_tracing("calculator-assistant")

    provider = create_provider(ProviderConfig(provider=args.provider, base_url=args.base_url))
    runner = Runner(max_iterations=5, parallel_tool_calls=args.parallel)
    session = Session(session_id=str(uuid.uuid4()))
    messages = [system(
        "You are a careful calculator. Use the calculate tool for every "
        "arithmetic step and the remember/recall tools for named values."
    )]

    print("Calculator Assistant (Ctrl+D quits)\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        request = ChatRequest(model=args.model, messages=[*messages, user(user_input)])
        token = CancelToken()
        timer = asyncio.get_running_loop().call_later(args.timeout, token.cancel, "timed out")
        results = []
        events = keep_result(
            runner.iter(provider, request, tools=TOOLS, session=session, cancel_token=token),
            results,
        )
        if args.sse:
            await print_sse(events, token)
        else:
            await print_plain(events)
        timer.cancel()

        if results:
            result = results[0]
            print(f"[{result.status.value} after {result.iterations} tool round(s)]\n")
            messages = result.messages
        else:
            print("[cancelled]\n")


if __name__ == "__main__":
    asyncio.run(main())
