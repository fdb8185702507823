"""Test challenge endpoint functionality."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from acme_autocert.challenge import (
    challenge_path,
    create_challenge_router,
    read_challenge,
    remove_challenge,
    write_challenge,
)


@pytest.fixture
def http_client(nonce_dir) -> TestClient:
    app = FastAPI()
    app.include_router(create_challenge_router(nonce_dir))
    return TestClient(app)


def test_challenge_storage_and_retrieval(http_client, nonce_dir):
    """Test that challenges can be stored and retrieved."""
    test_token = "test-challenge-token"
    test_auth = "test-challenge-token.test-authorization-key"

    path = write_challenge(nonce_dir, test_token, test_auth)
    assert path == nonce_dir / ".well-known" / "acme-challenge" / test_token

    response = http_client.get(f"/.well-known/acme-challenge/{test_token}")
    assert response.status_code == 200
    assert response.text == test_auth
    assert response.headers["content-type"].startswith("text/plain")


def test_challenge_not_found(http_client):
    """Test that non-existent challenges return 404."""
    response = http_client.get("/.well-known/acme-challenge/non-existent-token")
    assert response.status_code == 404
    assert response.json() == {"detail": "Challenge not found"}


def test_empty_token_not_found(http_client):
    response = http_client.get("/.well-known/acme-challenge/")
    assert response.status_code == 404


@pytest.mark.parametrize("token", ["..", "a.b", "%2E%2E%2Fsecret", "tok%20en"])
def test_invalid_token_not_found(http_client, nonce_dir, token):
    (nonce_dir / "secret").write_text("do not serve")

    response = http_client.get(f"/.well-known/acme-challenge/{token}")
    assert response.status_code == 404


def test_challenge_directory_missing(tmp_path):
    app = FastAPI()
    app.include_router(create_challenge_router(tmp_path / "does-not-exist"))
    client = TestClient(app)

    response = client.get("/.well-known/acme-challenge/abc")
    assert response.status_code == 404


def test_write_overwrites_and_remove(nonce_dir):
    write_challenge(nonce_dir, "tok", "first")
    write_challenge(nonce_dir, "tok", "second")
    assert read_challenge(nonce_dir, "tok") == b"second"

    assert remove_challenge(nonce_dir, "tok") is True
    assert read_challenge(nonce_dir, "tok") is None
    assert remove_challenge(nonce_dir, "tok") is False


def test_write_leaves_no_temp_files(nonce_dir):
    write_challenge(nonce_dir, "tok", "value")
    files = list(challenge_path(nonce_dir, "tok").parent.iterdir())
    assert [f.name for f in files] == ["tok"]


def test_challenge_path_rejects_traversal(nonce_dir):
    with pytest.raises(ValueError):
        challenge_path(nonce_dir, "../etc/passwd")
    assert read_challenge(nonce_dir, "../etc/passwd") is None
