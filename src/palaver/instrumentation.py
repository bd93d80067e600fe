"""Optional OpenTelemetry tracing.

Tracing is off until :func:`instrument` is called.  While it is off every
span helper yields ``None`` and the ``record_*`` helpers do nothing, so
callers never need to check whether ``opentelemetry-api`` is installed.

Span names and attributes follow the OpenTelemetry GenAI semantic
conventions: ``invoke_agent`` for a Runner loop, ``chat`` for one provider
stream and ``execute_tool`` for one tool call.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from palaver.events import FinishReason, Usage

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "palaver") -> None:
    """Start emitting spans.

    Configure a ``TracerProvider`` first (or run under
    ``opentelemetry-instrument``), then call this once at startup::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())
        palaver.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed
            (``pip install palaver[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for tracing; "
            "install it with: pip install palaver[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured, spans will be discarded")
    else:
        logger.info(f"Tracing enabled with tracer '{tracer_name}'")


def uninstrument() -> None:
    """Stop emitting spans."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, attributes: dict, client: bool = False):
    if _tracer is None:
        yield None
        return
    kwargs = {"attributes": attributes}
    if client:
        from opentelemetry.trace import SpanKind

        kwargs["kind"] = SpanKind.CLIENT
    with _tracer.start_as_current_span(name, **kwargs) as span:
        yield span


def run_span(provider: str, model: str, session_id: str | None = None):
    """Span covering one ``Runner.iter()`` invocation."""
    attributes = {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.provider.name": provider,
        "gen_ai.request.model": model,
    }
    if session_id:
        attributes["gen_ai.conversation.id"] = session_id
    return _span(f"invoke_agent {model}", attributes)


def completion_span(provider: str, model: str):
    """Span covering one provider stream, from open to terminal event."""
    return _span(
        f"chat {model}",
        {
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
        },
        client=True,
    )


def tool_span(tool_name: str, call_id: str):
    return _span(
        f"execute_tool {tool_name}",
        {
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    )


def record_usage(
    span,
    usage: "Usage | None",
    response_model: str | None = None,
    finish_reason: "FinishReason | None" = None,
) -> None:
    """Attach token usage, response model and finish reason to a ``chat`` span."""
    if span is None:
        return
    if usage is not None:
        span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
        span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)
    if finish_reason is not None:
        span.set_attribute("gen_ai.response.finish_reasons", [finish_reason.value])


def record_run_outcome(span, status: str, iterations: int) -> None:
    if span is None:
        return
    span.set_attribute("palaver.run.status", status)
    span.set_attribute("palaver.run.iterations", iterations)


def record_error(span, exception: BaseException) -> None:
    """Mark a span as failed.

    Sets ``error.type`` to the exception's qualified class name.
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
