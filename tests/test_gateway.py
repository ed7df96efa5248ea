"""Tests for the gateway HTTP application."""

from __future__ import annotations

import asyncio
import logging
import socket

import httpx
import pytest
import uvicorn
from aiohttp import test_utils, web
from fastapi.testclient import TestClient

from relay_core.config import RelayConfig
from relay_core.errors import BackendError, BackendUnreachable
from relay_core.gateway.app import create_app, translate_response
from relay_core.gateway.backend import TAGS_PATH, BackendClient
from relay_core.gateway.server import serve

MODEL = "llama3.2:1b"


class FakeBackend:
    """Stands in for BackendClient; records generate calls."""

    base_url = "http://backend.test"

    def __init__(self, generate_result=None, generate_error=None, ping_error=None, ping_delay=0.0):
        self.generate_result = generate_result or {"response": "hello", "created_at": "t", "done": True}
        self.generate_error = generate_error
        self.ping_error = ping_error
        self.ping_delay = ping_delay
        self.calls = []
        self.closed = False

    async def generate(self, model, prompt, timeout=60.0):
        self.calls.append((model, prompt, timeout))
        if self.generate_error is not None:
            raise self.generate_error
        return self.generate_result

    async def ping(self, timeout=5.0):
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        if self.ping_error is not None:
            raise self.ping_error

    async def close(self):
        self.closed = True


def make_client(backend, **kwargs):
    return TestClient(create_app(MODEL, backend, **kwargs))


class TestGenerate:

    def test_round_trip(self):
        backend = FakeBackend()
        with make_client(backend, generate_timeout=42.0) as client:
            response = client.post("/", json={"prompt": "hello"})

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.json() == {
            "response": "hello",
            "model": MODEL,
            "created_at": "t",
            "done": True,
        }
        assert backend.calls == [(MODEL, "hello", 42.0)]

    def test_missing_prompt_forwards_empty_string(self):
        backend = FakeBackend()
        with make_client(backend) as client:
            response = client.post("/", json={"other": 1})
        assert response.status_code == 200
        assert backend.calls[0][1] == ""

    def test_missing_created_at_becomes_empty_string(self):
        backend = FakeBackend(generate_result={"response": "ok"})
        with make_client(backend) as client:
            response = client.post("/", json={"prompt": "x"})
        assert response.json()["created_at"] == ""

    def test_backend_status_is_reported(self):
        backend = FakeBackend(generate_error=BackendError(500, "boom"))
        with make_client(backend) as client:
            response = client.post("/", json={"prompt": "hello"})

        assert response.status_code == 500
        assert "500" in response.json()["error"]
        assert response.json()["error"] == "Backend error: 500"

    def test_transport_error_is_internal_error(self):
        backend = FakeBackend(generate_error=BackendUnreachable("connection refused"))
        with make_client(backend) as client:
            response = client.post("/", json={"prompt": "hello"})

        assert response.status_code == 500
        assert response.json()["error"].startswith("Internal server error")

    def test_malformed_json_is_internal_error(self):
        backend = FakeBackend()
        with make_client(backend) as client:
            response = client.post(
                "/", content=b"{not json", headers={"Content-Type": "application/json"}
            )

        assert response.status_code == 500
        assert "error" in response.json()
        assert backend.calls == []

    def test_backend_closed_on_shutdown(self):
        backend = FakeBackend()
        with make_client(backend):
            pass
        assert backend.closed is True


class TestHealth:

    def test_healthy(self):
        with make_client(FakeBackend()) as client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "model": MODEL}

    @pytest.mark.parametrize(
        "error",
        [BackendError(404), BackendError(502), BackendUnreachable("connection refused")],
    )
    def test_backend_failure_is_unavailable(self, error):
        with make_client(FakeBackend(ping_error=error)) as client:
            response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "unavailable"
        assert response.json()["error"]

    def test_timeout_is_unavailable(self):
        backend = FakeBackend(ping_delay=1.0)
        with make_client(backend, health_timeout=0.05) as client:
            response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "unavailable"

    @pytest.mark.asyncio
    async def test_plain_text_backend_is_healthy(self):
        async def tags(request):
            return web.Response(text="Ollama is running", content_type="text/plain")

        stub = web.Application()
        stub.router.add_get(TAGS_PATH, tags)

        async with test_utils.TestServer(stub) as server:
            backend = BackendClient(str(server.make_url("/")))
            transport = httpx.ASGITransport(app=create_app(MODEL, backend))
            try:
                async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as client:
                    response = await client.get("/health")
            finally:
                await backend.close()

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "model": MODEL}


class TestRouting:

    @pytest.mark.parametrize("path", ["/", "/health", "/unknown", "/a/b/c"])
    def test_preflight(self, path):
        with make_client(FakeBackend()) as client:
            response = client.options(path)
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"
        assert response.headers["access-control-allow-headers"] == "Content-Type"

    @pytest.mark.parametrize(
        "method,path",
        [("GET", "/"), ("POST", "/health"), ("GET", "/unknown"), ("DELETE", "/"), ("PUT", "/health")],
    )
    def test_unknown_routes_are_404(self, method, path):
        backend = FakeBackend()
        with make_client(backend) as client:
            response = client.request(method, path)
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}
        assert backend.calls == []


def test_translate_response_ignores_backend_model():
    body = translate_response(MODEL, {"response": "hi", "model": "other", "done": False})
    assert body == {"response": "hi", "model": MODEL, "created_at": "", "done": True}


class GatedBackend(FakeBackend):
    """Holds every generate call until released."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, model, prompt, timeout=60.0):
        self.started.set()
        await self.release.wait()
        return await super().generate(model, prompt, timeout)


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_slow_generate_does_not_block_health(self):
        backend = GatedBackend()
        transport = httpx.ASGITransport(app=create_app(MODEL, backend))

        async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as client:
            pending = asyncio.ensure_future(client.post("/", json={"prompt": "slow"}))
            await asyncio.wait_for(backend.started.wait(), 2.0)

            health = await asyncio.wait_for(client.get("/health"), 2.0)
            assert health.status_code == 200
            assert not pending.done()

            backend.release.set()
            response = await asyncio.wait_for(pending, 2.0)

        assert response.status_code == 200
        assert response.json()["response"] == "hello"


class FakeServer:
    """Records the sockets uvicorn would have served on."""

    instances = []

    def __init__(self, config):
        self.config = config
        self.ports = []
        FakeServer.instances.append(self)

    def run(self, sockets=None):
        self.ports = [s.getsockname()[1] for s in sockets]


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestServe:

    @pytest.fixture(autouse=True)
    def fake_uvicorn(self, monkeypatch):
        FakeServer.instances = []
        monkeypatch.setattr(uvicorn, "Server", FakeServer)

    def test_serves_on_persisted_port(self, tmp_path, caplog):
        port = free_port()
        config_file = tmp_path / "relay_config"
        config_file.write_text(f"GATEWAY_PORT={port}\n")
        config = RelayConfig(gateway_port=port, port_range=(port, port), gateway_host="127.0.0.1", config_file=config_file)

        with caplog.at_level(logging.ERROR, logger="relay_core.gateway.server"):
            serve(config)

        assert FakeServer.instances[0].ports == [port]
        assert "Configured gateway port" not in caplog.text

    def test_drift_is_logged_and_never_written_back(self, tmp_path, caplog):
        fallback = free_port()
        config_file = tmp_path / "relay_config"

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            taken = listener.getsockname()[1]
            config_file.write_text(f"GATEWAY_PORT={taken}\n")
            config = RelayConfig(
                gateway_port=taken,
                port_range=(fallback, fallback),
                gateway_host="127.0.0.1",
                config_file=config_file,
            )

            with caplog.at_level(logging.ERROR, logger="relay_core.gateway.server"):
                serve(config)

        assert FakeServer.instances[0].ports == [fallback]
        assert f"Configured gateway port {taken} but gateway is bound to {fallback}" in caplog.text
        assert f"relayctl configure --port {fallback}" in caplog.text
        assert config_file.read_text() == f"GATEWAY_PORT={taken}\n"
        assert config.gateway_port == taken
