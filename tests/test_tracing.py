"""
Tracing Module Tests
====================
Tests for OpenTelemetry tracing setup.
"""

from unittest.mock import MagicMock, patch

import pytest


class TestTracingSetup:
    """Tests for tracing module configuration."""

    @pytest.mark.unit
    def test_service_name_constant(self):
        from chorus.tracing import SERVICE_NAME_VALUE

        assert SERVICE_NAME_VALUE == "chorus-pipeline"

    @pytest.mark.unit
    def test_otlp_endpoint_default(self):
        from chorus.tracing import OTLP_ENDPOINT

        assert "localhost" in OTLP_ENDPOINT or "4318" in OTLP_ENDPOINT

    @pytest.mark.unit
    @patch("chorus.tracing.atexit")
    @patch("chorus.tracing.TracerProvider")
    @patch("chorus.tracing.OTLPSpanExporter")
    @patch("chorus.tracing.BatchSpanProcessor")
    @patch("chorus.tracing.trace")
    @patch("chorus.tracing.HTTPXClientInstrumentor")
    def test_setup_tracing_creates_provider(
        self, mock_httpx, mock_trace, mock_processor, mock_exporter, mock_provider, mock_atexit
    ):
        """setup_tracing should create and configure a TracerProvider."""
        from chorus.tracing import setup_tracing

        mock_trace.get_tracer.return_value = MagicMock()

        setup_tracing()

        mock_provider.assert_called_once()
        mock_trace.set_tracer_provider.assert_called_once()
        mock_httpx.return_value.instrument.assert_called_once()

    @pytest.mark.unit
    @patch("chorus.tracing.trace")
    def test_get_tracer_with_default_name(self, mock_trace):
        from chorus.tracing import SERVICE_NAME_VALUE, get_tracer

        mock_trace.get_tracer.return_value = MagicMock()

        get_tracer()

        mock_trace.get_tracer.assert_called_with(SERVICE_NAME_VALUE)


class TestSafeSetSpanAttributes:

    @pytest.mark.unit
    def test_values_are_coerced(self):
        from chorus.tracing import safe_set_span_attributes

        span = MagicMock()
        safe_set_span_attributes(span, {
            "text": "x" * 3000,
            "count": 3,
            "skipped": None,
            "items": [1, 2],
            "mapping": {"b": 1, "a": 2},
            "": "ignored",
        })

        calls = {c.args[0]: c.args[1] for c in span.set_attribute.call_args_list}
        assert len(calls["text"]) == 2048
        assert calls["count"] == 3
        assert "skipped" not in calls
        assert calls["items"] == ["1", "2"]
        assert calls["mapping"] == '{"a": 2, "b": 1}'
        assert "" not in calls

    @pytest.mark.unit
    def test_none_span_and_failing_setter(self):
        from chorus.tracing import safe_set_span_attributes

        safe_set_span_attributes(None, {"a": 1})
        span = MagicMock()
        span.set_attribute.side_effect = RuntimeError("exporter down")
        safe_set_span_attributes(span, {"a": 1})

    @pytest.mark.unit
    def test_traced_span_yields_span(self):
        from chorus.tracing import traced_span

        with traced_span("chorus.test", {"chorus.key": "value"}) as span:
            assert span is not None
