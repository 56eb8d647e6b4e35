import unittest
from unittest.mock import MagicMock, patch

from tokendash.observability import otel


class ObservabilityTests(unittest.TestCase):
    def test_otlp_endpoint_normalization(self) -> None:
        self.assertEqual(otel._normalize_otlp_endpoint("http://collector:4318", "/v1/traces"), "http://collector:4318/v1/traces")
        self.assertEqual(otel._normalize_otlp_endpoint("http://collector:4318/v1/", "/v1/metrics"), "http://collector:4318/v1/metrics")
        self.assertEqual(otel._normalize_otlp_endpoint("http://c/v1/traces", "/v1/traces"), "http://c/v1/traces")
        self.assertEqual(otel._normalize_otlp_endpoint("  ", "/v1/traces"), "")

    def test_recorders_are_noops_when_disabled(self) -> None:
        otel.record_ingestion("success", 12.5, project="p")
        otel.record_parser_failure("line", project="p", count=3)
        otel.record_token_usage(project="p", model="m", token_input=1, token_output=2)
        with otel.start_span("tokendash.test") as span:
            self.assertIsNone(span)

    def test_token_usage_feeds_both_backends(self) -> None:
        otel_counter = MagicMock()
        prom_counter = MagicMock()
        with patch.dict(otel._otel_instruments, {"tokendash_tokens_total": otel_counter}), \
                patch.dict(otel._prom_instruments, {"tokendash_tokens_total": prom_counter}):
            otel.record_token_usage(project="", model="claude-sonnet", token_input=100, token_output=0)

        otel_counter.add.assert_called_once_with(
            100, {"model": "claude-sonnet", "project": "unknown", "direction": "input"}
        )
        prom_counter.labels.assert_called_once_with(model="claude-sonnet", project="unknown", direction="input")
        prom_counter.labels.return_value.inc.assert_called_once_with(100)

    def test_ingestion_latency_uses_histogram(self) -> None:
        histogram = MagicMock()
        with patch.dict(otel._otel_instruments, {"tokendash_ingestion_latency_ms": histogram}):
            otel.record_ingestion("partial", -5, project="p")
        histogram.record.assert_called_once_with(0.0, {"result": "partial", "project": "p"})


if __name__ == "__main__":
    unittest.main()
