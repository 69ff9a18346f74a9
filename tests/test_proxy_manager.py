import socket
import threading
import time

import pytest
import requests

from core.proxy_manager import ProxyManager


@pytest.fixture
def manager(config, free_port):
    config.set("proxy.local_port", free_port)
    manager = ProxyManager(config)
    yield manager
    if manager.is_running:
        manager.stop()


class TestProxyManager:
    def test_start_serves_health_and_stop(self, manager):
        assert manager.start() is True
        assert manager.is_running

        response = requests.get(f"{manager.base_url}/health", timeout=5)
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

        missing = requests.get(f"{manager.base_url}/proxy", timeout=5)
        assert missing.status_code == 400

        manager.stop()
        assert not manager.is_running
        assert not manager.thread.is_alive()

    def test_start_twice_is_rejected(self, manager):
        assert manager.start() is True
        assert manager.start() is False

    def test_busy_port_is_reported(self, manager):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", manager.local_port))
            s.listen(1)

            assert manager.start() is False

        assert manager.last_error_type == "port"
        assert str(manager.local_port) in manager.last_error_details
        assert not manager.is_running

    def test_status(self, manager):
        status = manager.get_status()

        assert status["running"] is False
        assert status["port"] == manager.local_port
        assert status["url"] == f"http://127.0.0.1:{manager.local_port}/proxy"

        manager.start()
        status = manager.get_status()
        assert status["running"] is True
        assert status["proxy_stats"] == {"requests": 0, "responses": 0, "errors": 0}

    def test_custom_endpoint_from_config(self, config, free_port):
        config.set("proxy.local_port", free_port)
        config.set("proxy.endpoint", "/api/proxy")
        manager = ProxyManager(config)

        try:
            assert manager.start() is True
            response = requests.get(f"{manager.base_url}/api/proxy", timeout=5)
            assert response.status_code == 400
        finally:
            manager.stop()

    def test_stop_with_request_in_flight(self, manager):
        # Upstream accepts TCP connections but never answers
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as silent:
            silent.bind(("127.0.0.1", 0))
            silent.listen(8)
            target = f"http://127.0.0.1:{silent.getsockname()[1]}/paper.html"

            assert manager.start() is True

            def request_in_flight():
                try:
                    requests.get(f"{manager.base_url}/proxy", params={"url": target}, timeout=30)
                except requests.RequestException:
                    pass

            client = threading.Thread(target=request_in_flight, daemon=True)
            client.start()

            deadline = time.monotonic() + 5
            while manager.proxy.stats["total_requests"] == 0 and time.monotonic() < deadline:
                time.sleep(0.05)
            assert manager.proxy.stats["total_requests"] == 1

            started = time.monotonic()
            manager.stop()
            elapsed = time.monotonic() - started

        assert not manager.is_running
        assert not manager.thread.is_alive()
        assert manager.loop.is_closed()
        assert elapsed < 2 * ProxyManager.SHUTDOWN_TIMEOUT + 1
