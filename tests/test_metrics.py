from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from src.spin.api.main import app
from src.spin.observability.metrics import record_generation, sanitize_path


client = TestClient(app)


def test_metrics_endpoint_exposes_histogram():
    r = client.get("/health")
    assert r.status_code == 200

    m = client.get("/metrics")
    assert m.status_code == 200
    body = m.text

    assert "# HELP spin_request_latency_seconds" in body
    assert "# TYPE spin_request_latency_seconds histogram" in body
    assert "spin_request_latency_seconds_count" in body
    assert "spin_generations_total" in body


def test_record_generation_counts_by_mode_and_outcome():
    labels = {"mode": "iterative", "outcome": "TruncationError"}
    before = REGISTRY.get_sample_value("spin_generations_total", labels) or 0.0
    record_generation("iterative", "TruncationError")
    assert REGISTRY.get_sample_value("spin_generations_total", labels) == before + 1

    count_before = REGISTRY.get_sample_value("spin_generation_duration_seconds_count", {"mode": "new"}) or 0.0
    record_generation("new", "success", 2.5)
    assert REGISTRY.get_sample_value("spin_generation_duration_seconds_count", {"mode": "new"}) == count_before + 1


def test_sanitize_path_keeps_first_segment():
    assert sanitize_path("/api/anthropic?userId=u1") == "/api"
    assert sanitize_path("/health") == "/health"
    assert sanitize_path("") == "/"
