from __future__ import annotations

import threading
import urllib.error
import urllib.request

from prometheus_client import CollectorRegistry

from secretsync.src.health import start_health_server
from secretsync.src.metrics import build_metrics


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Tests for the liveness, readiness and metrics endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.metrics = build_metrics(CollectorRegistry())
        self.server = start_health_server(ready=self.ready, port=0, registry=self.metrics.registry)
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_until_watches_sync(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false"

        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_readyz_returns_503_after_watches_lost(self) -> None:
        self.ready.set()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 200

        self.ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_metrics_serves_the_controller_registry(self) -> None:
        self.metrics.sync_calls_total.labels(name="app", namespace="default").inc()

        status, body = _get(f"{self.base_url}/metrics")

        assert status == 200
        assert 'secretsync_sync_calls_total{name="app",namespace="default"} 1.0' in body
        assert "secretsync_queue_depth" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404
