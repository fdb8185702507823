"""Tests for the host application, the engine watcher and the CLI entry point."""

import asyncio
import json
import socket
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from acme_autocert import main as main_module
from acme_autocert.challenge import write_challenge
from acme_autocert.config import Config
from acme_autocert.errors import StartupIssuanceError, ValidationFailed
from acme_autocert.main import main
from acme_autocert.manager import RenewalEngine
from acme_autocert.models import CertJobConfig
from acme_autocert.server import (
    _connect_address,
    _watch_engine,
    create_app,
    run_server,
    wait_for_listener,
)


@pytest.fixture
def engine(tmp_path, fake_issuer) -> RenewalEngine:
    engine = RenewalEngine(nonce_directory=tmp_path / "nonce", ssl_directory=tmp_path / "ssl",
                           issuer=fake_issuer)
    engine.add_cert(CertJobConfig(addrs=["127.0.0.1:8443"], domains=["example.com"]))
    yield engine
    engine.stop()


def test_challenge_route_served_from_engine_directory(engine):
    client = TestClient(create_app(engine))
    write_challenge(engine.nonce_directory, "abc_123", "abc_123.thumb")

    response = client.get("/.well-known/acme-challenge/abc_123")
    assert response.status_code == 200
    assert response.text == "abc_123.thumb"

    assert client.get("/.well-known/acme-challenge/other").status_code == 404


def test_health_before_start(engine):
    client = TestClient(create_app(engine))

    data = client.get("/health").json()

    assert data["status"] == "healthy"
    assert data["scheduler"] is False
    assert data["restart_requested"] is False
    assert data["certificates"]["example.com"]["state"] == "unchecked"


def test_health_with_running_scheduler(engine, write_cert_pair):
    write_cert_pair(engine.cert_jobs[0], timedelta(days=60))
    client = TestClient(create_app(engine))
    engine.start()

    data = client.get("/health").json()

    assert data["scheduler"] is True
    assert data["certificates"]["example.com"]["state"] == "waiting"
    assert data["certificates"]["example.com"]["last_checked"] is not None


def test_health_reports_failures(engine):
    engine.issuer.error = ValidationFailed("rejected", "example.com")
    client = TestClient(create_app(engine))

    with pytest.raises(StartupIssuanceError):
        engine.start()

    data = client.get("/health").json()
    assert data["status"] == "degraded"
    assert data["certificates"]["example.com"]["state"] == "failed"
    assert "rejected" in data["certificates"]["example.com"]["last_error"]


def test_watcher_returns_on_restart(engine):
    asyncio.run(asyncio.wait_for(_watch_engine(engine), timeout=10))

    assert engine.restart_requested
    assert engine.cert_jobs[0].cert_path.is_file()


def test_watcher_propagates_startup_failure(engine):
    engine.issuer.error = ValidationFailed("rejected", "example.com")

    with pytest.raises(StartupIssuanceError):
        asyncio.run(_watch_engine(engine))


class TestMain:

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr(main_module, "setup_logging", lambda *args, **kwargs: None)

    @pytest.fixture
    def config_env(self, monkeypatch, tmp_path):
        config = {
            "nonce_directory": str(tmp_path / "nonce"),
            "ssl_directory": str(tmp_path / "ssl"),
            "cert_builders": [{"addrs": ["127.0.0.1:8443"], "domains": ["example.com"]}],
        }
        monkeypatch.setenv("AUTOCERT_TEST_CONFIG", json.dumps(config))
        return "AUTOCERT_TEST_CONFIG"

    def test_missing_configuration(self, monkeypatch):
        monkeypatch.delenv("AUTOCERT_UNSET", raising=False)
        assert main(["--env-var", "AUTOCERT_UNSET"]) == 2

    def test_invalid_configuration_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"cert_builders": [{"addrs": [], "domains": []}]}')
        assert main(["--config", str(path)]) == 2

    def test_restart_exit_code(self, monkeypatch, config_env):
        async def fake_run_server(app, engine, http_bind=None):
            engine.restart_signal.trigger("certificates were issued at startup")
            return True

        monkeypatch.setattr(main_module, "run_server", fake_run_server)

        assert main(["--env-var", config_env]) == Config.RESTART_EXIT_CODE

    def test_clean_exit(self, monkeypatch, config_env):
        async def fake_run_server(app, engine, http_bind=None):
            assert http_bind == "127.0.0.1:8080"
            return False

        monkeypatch.setattr(main_module, "run_server", fake_run_server)

        assert main(["--env-var", config_env, "--http-bind", "127.0.0.1:8080"]) == 0

    def test_startup_failure_exit_code(self, monkeypatch, config_env):
        async def fake_run_server(app, engine, http_bind=None):
            raise StartupIssuanceError("could not create cert for example.com")

        monkeypatch.setattr(main_module, "run_server", fake_run_server)

        assert main(["--env-var", config_env]) == 1

    def test_listener_failure_exit_code(self, monkeypatch, config_env):
        async def fake_run_server(app, engine, http_bind=None):
            raise OSError("address already in use")

        monkeypatch.setattr(main_module, "run_server", fake_run_server)

        assert main(["--env-var", config_env]) == 1


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.mark.parametrize("bind, expected", [
    ("0.0.0.0:80", ("127.0.0.1", 80)),
    ("127.0.0.1:8080", ("127.0.0.1", 8080)),
    ("[::]:443", ("::1", 443)),
    ("[::1]:8443", ("::1", 8443)),
])
def test_connect_address(bind, expected):
    assert _connect_address(bind) == expected


def test_wait_for_listener_reraises_server_failure():
    async def scenario():
        async def fail():
            raise OSError("address already in use")

        task = asyncio.create_task(fail())
        await asyncio.sleep(0)
        await wait_for_listener(f"127.0.0.1:{free_port()}", task, timeout=1)

    with pytest.raises(OSError, match="address already in use"):
        asyncio.run(scenario())


def test_wait_for_listener_times_out():
    async def scenario():
        task = asyncio.create_task(asyncio.sleep(10))
        try:
            await wait_for_listener(f"127.0.0.1:{free_port()}", task, timeout=0.2)
        finally:
            task.cancel()

    with pytest.raises(OSError):
        asyncio.run(scenario())


def test_run_server_answers_challenges_before_issuance(engine, monkeypatch):
    bind = f"127.0.0.1:{free_port()}"
    write_challenge(engine.nonce_directory, "early_token", "early_token.thumb")
    seen = []
    start = engine.start

    def start_after_fetch():
        response = httpx.get(f"http://{bind}/.well-known/acme-challenge/early_token", timeout=5)
        seen.append((response.status_code, response.text))
        return start()

    monkeypatch.setattr(engine, "start", start_after_fetch)

    restart = asyncio.run(asyncio.wait_for(run_server(create_app(engine), engine, bind), timeout=30))

    assert restart is True
    assert seen == [(200, "early_token.thumb")]
    assert engine.cert_jobs[0].cert_path.is_file()
