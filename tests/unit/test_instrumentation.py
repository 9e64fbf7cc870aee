"""Unit tests for the instrumentation module.

OTel interactions are mocked with unittest.mock; ``opentelemetry-api``
is a test dependency so ``SpanKind`` / ``StatusCode`` can be imported
for exact assertions.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.trace import SpanKind, StatusCode

import chatloop.instrumentation as inst
from chatloop.instrumentation import (
    completion_span,
    record_error,
    record_usage,
    tool_span,
    turn_span,
    uninstrument,
)


@pytest.fixture(autouse=True)
def _reset_tracer():
    inst._tracer = None
    yield
    inst._tracer = None


def _mock_otel(mock_trace):
    """Patch find_spec + sys.modules for a mock OTel env."""
    return (
        patch("importlib.util.find_spec", return_value=MagicMock()),
        patch.dict(
            "sys.modules",
            {
                "opentelemetry": MagicMock(trace=mock_trace),
                "opentelemetry.trace": mock_trace,
            },
        ),
    )


# -------------------------------------------------------------------
# instrument() / uninstrument()
# -------------------------------------------------------------------


class TestInstrument:
    def test_raises_without_otel_installed(self):
        with patch("importlib.util.find_spec", return_value=None):
            with pytest.raises(ImportError, match="pip install"):
                inst.instrument()

    def test_sets_global_tracer(self):
        mock_tracer = MagicMock()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = mock_tracer
        mock_trace.NoOpTracer = type("NoOpTracer", (), {})

        p1, p2 = _mock_otel(mock_trace)
        with p1, p2:
            inst.instrument()

        assert inst._tracer is mock_tracer
        mock_trace.get_tracer.assert_called_once_with("chatloop")

    def test_logs_message_for_noop_tracer(self, caplog):
        NoOpTracer = type("NoOpTracer", (), {})
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = NoOpTracer()
        mock_trace.NoOpTracer = NoOpTracer

        p1, p2 = _mock_otel(mock_trace)
        with p1, p2:
            with caplog.at_level(logging.INFO, logger="chatloop.instrumentation"):
                inst.instrument(tracer_name="my-app")

        mock_trace.get_tracer.assert_called_once_with("my-app")
        assert any(
            "No TracerProvider configured" in r.message for r in caplog.records
        )

    def test_uninstrument_clears_tracer(self):
        inst._tracer = MagicMock()
        uninstrument()
        assert inst._tracer is None


# -------------------------------------------------------------------
# Span helpers
# -------------------------------------------------------------------


class TestSpansUninstrumented:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "span_fn,args",
        [
            (turn_span, ("conv", "m")),
            (completion_span, ("llama.cpp", "m", 1)),
            (tool_span, ("t", "call_1")),
        ],
        ids=["turn_span", "completion_span", "tool_span"],
    )
    async def test_span_yields_none_without_tracer(self, span_fn, args):
        async with span_fn(*args) as s:
            assert s is None


class TestSpansInstrumented:
    @pytest.fixture(autouse=True)
    def _set_mock_tracer(self):
        self.mock_span = MagicMock()
        self.mock_tracer = MagicMock()
        self.mock_tracer.start_as_current_span.return_value.__enter__ = (
            MagicMock(return_value=self.mock_span)
        )
        self.mock_tracer.start_as_current_span.return_value.__exit__ = (
            MagicMock(return_value=False)
        )
        inst._tracer = self.mock_tracer

    @pytest.mark.asyncio
    async def test_turn_span(self):
        async with turn_span("conv-1", "qwen") as s:
            assert s is self.mock_span

        self.mock_tracer.start_as_current_span.assert_called_once_with(
            "chat_turn",
            attributes={
                "gen_ai.operation.name": "chat_turn",
                "gen_ai.conversation.id": "conv-1",
                "gen_ai.request.model": "qwen",
            },
        )

    @pytest.mark.asyncio
    async def test_completion_span(self):
        async with completion_span("llama.cpp", "qwen", 3) as s:
            assert s is self.mock_span

        self.mock_tracer.start_as_current_span.assert_called_once_with(
            "chat qwen",
            kind=SpanKind.CLIENT,
            attributes={
                "gen_ai.operation.name": "chat",
                "gen_ai.provider.name": "llama.cpp",
                "gen_ai.request.model": "qwen",
                "chatloop.round": 3,
            },
        )

    @pytest.mark.asyncio
    async def test_tool_span(self):
        async with tool_span("lookup", "call_42") as s:
            assert s is self.mock_span

        self.mock_tracer.start_as_current_span.assert_called_once_with(
            "execute_tool lookup",
            attributes={
                "gen_ai.operation.name": "execute_tool",
                "gen_ai.tool.name": "lookup",
                "gen_ai.tool.call.id": "call_42",
            },
        )


# -------------------------------------------------------------------
# record_usage / record_error
# -------------------------------------------------------------------


class TestRecordUsage:
    def test_noop_on_none_span(self):
        record_usage(None, {"prompt_tokens": 10})

    def test_sets_token_counts(self):
        span = MagicMock()
        record_usage(span, {"prompt_tokens": 100, "completion_tokens": 50})

        span.set_attribute.assert_any_call("gen_ai.usage.input_tokens", 100)
        span.set_attribute.assert_any_call("gen_ai.usage.output_tokens", 50)

    def test_missing_usage(self):
        span = MagicMock()
        record_usage(span, None)
        record_usage(span, {})
        span.set_attribute.assert_not_called()


class TestRecordError:
    def test_sets_status_and_records_exception(self):
        span = MagicMock()
        exc = RuntimeError("boom")
        record_error(span, exc)

        span.set_status.assert_called_once_with(StatusCode.ERROR, "boom")
        span.record_exception.assert_called_once_with(exc)
        span.set_attribute.assert_called_once_with("error.type", "RuntimeError")

    def test_noop_on_none_span(self):
        record_error(None, RuntimeError("boom"))
