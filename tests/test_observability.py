from __future__ import annotations

import json
import logging

import structlog
from fastapi import FastAPI

from bucketfront.common import observability
from bucketfront.common.metrics import Counter, Histogram, MetricsRegistry


def test_configure_logging_emits_json(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_logging_configured", False)

    observability.configure_logging("bucketfront.test", "INFO")
    logger = structlog.get_logger("bucketfront.test.logger")

    with caplog.at_level(logging.INFO):
        logger.info("cache_purged", bucket="main", keys=2)

    payload = json.loads(caplog.records[-1].message)
    assert payload["message"] == "cache_purged"
    assert payload["bucket"] == "main"
    assert payload["service"] == "bucketfront.test"


def test_parse_otlp_headers():
    value = "authorization=Bearer token, custom=abc, broken"
    headers = observability.parse_otlp_headers(value)
    assert headers == {"authorization": "Bearer token", "custom": "abc"}


def test_instrument_fastapi_app_adds_middleware(monkeypatch):
    monkeypatch.setattr(observability, "_tracer_configured", False)
    app = FastAPI()
    observability.configure_tracing("bucketfront.obs", None, None, 1.0)
    observability.instrument_fastapi_app(app)
    assert any(m.cls.__name__ == "OpenTelemetryMiddleware" for m in app.user_middleware)


def test_registry_renders_prometheus_text():
    registry = MetricsRegistry()
    hits = registry.register(Counter("test_hits_total", "Hits"))
    latency = registry.register(Histogram("test_latency_seconds", buckets=[0.5, 0.1], description="Latency"))

    hits.inc()
    hits.inc(2)
    latency.observe(0.05)
    latency.observe(0.3)
    latency.observe(7.0)
    text = registry.render()

    assert "test_hits_total 3.0" in text
    assert 'test_latency_seconds_bucket{le="0.1"} 1' in text
    assert 'test_latency_seconds_bucket{le="0.5"} 2' in text
    assert 'test_latency_seconds_bucket{le="+Inf"} 3' in text
    assert latency.count == 3


def test_registering_same_name_returns_existing_metric():
    registry = MetricsRegistry()
    first = registry.register(Counter("dup_total"))

    assert registry.register(Counter("dup_total")) is first
