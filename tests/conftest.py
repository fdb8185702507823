"""Pytest configuration and shared fixtures."""

import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from acme_autocert.config import Config
from acme_autocert.models import CertJob, CertJobConfig


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """One RSA key for the whole session; generating keys is slow."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_certificate(key, domains: List[str], valid_for: timedelta) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(min(now, now + valid_for) - timedelta(days=1))
        .not_valid_after(now + valid_for)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )


@pytest.fixture
def write_cert_pair(rsa_key) -> Callable:
    """Write a self-signed certificate and its key for a job."""

    def _write(job: CertJob, valid_for: timedelta, key=None) -> None:
        key = key or rsa_key
        cert = build_certificate(key, job.domains, valid_for)
        job.cert_path.parent.mkdir(parents=True, exist_ok=True)
        job.key_path.parent.mkdir(parents=True, exist_ok=True)
        job.cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        job.key_path.write_bytes(rsa_key_pem(key))

    return _write


def rsa_key_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def ssl_dir(tmp_path) -> Path:
    path = tmp_path / "ssl"
    path.mkdir()
    return path


@pytest.fixture
def nonce_dir(tmp_path) -> Path:
    path = tmp_path / "nonce"
    path.mkdir()
    return path


@pytest.fixture
def make_job(ssl_dir) -> Callable:
    """Build a resolved job under the temporary SSL directory."""

    def _make(domains=("example.com",), **kwargs) -> CertJob:
        kwargs.setdefault("addrs", ["127.0.0.1:8443"])
        return CertJobConfig(domains=list(domains), **kwargs).resolve(ssl_dir)

    return _make


class FakeIssuer:
    """Stands in for ACMEClient; writes a 90 day certificate per issue."""

    def __init__(self, write_pair: Optional[Callable] = None, delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.write_pair = write_pair
        self.delay = delay
        self.error = error
        self.calls: List[str] = []
        self.intervals: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def issue(self, job: CertJob, nonce_directory: Path):
        with self._lock:
            self.calls.append(job.name)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        start = time.monotonic()
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if self.write_pair is not None:
                self.write_pair(job, timedelta(days=90))
            return None
        finally:
            with self._lock:
                self.in_flight -= 1
                self.intervals.append((start, time.monotonic()))


@pytest.fixture
def fake_issuer(write_cert_pair) -> FakeIssuer:
    return FakeIssuer(write_pair=write_cert_pair)


@pytest.fixture
def fast_polling(monkeypatch):
    """No sleeping between ACME authorization polls."""
    monkeypatch.setattr(Config, "ACME_POLL_INTERVAL_SECONDS", 0)
    monkeypatch.setattr(Config, "ACME_POLL_MAX_ATTEMPTS", 3)


@pytest.fixture
def issuer_factory(write_cert_pair) -> Callable:
    """Build FakeIssuers with custom delay, error or file writing."""

    def _make(delay: float = 0.0, error: Optional[Exception] = None, writes: bool = True) -> FakeIssuer:
        return FakeIssuer(write_pair=write_cert_pair if writes else None, delay=delay, error=error)

    return _make


@pytest.fixture
def cert_builder() -> Callable:
    return build_certificate


@pytest.fixture
def key_pem() -> Callable:
    return rsa_key_pem
