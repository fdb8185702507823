"""Expiry checks for on-disk certificate and key pairs."""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import CertificateFileError, MalformedCertificate

logger = logging.getLogger(__name__)


def load_certificate(cert_path: Path) -> x509.Certificate:
    """Load the leaf (first) certificate of a PEM chain file."""
    try:
        data = Path(cert_path).read_bytes()
    except OSError as e:
        raise CertificateFileError(f"Can't read certificate {cert_path}: {e}") from e

    try:
        certificates = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise MalformedCertificate(cert_path, str(e)) from e
    if not certificates:
        raise MalformedCertificate(cert_path, "no certificate found")
    return certificates[0]


def read_not_after(cert_path: Path) -> datetime:
    """Return the certificate's notAfter as an aware UTC datetime."""
    return load_certificate(cert_path).not_valid_after_utc


def key_matches_certificate(key_path: Path, certificate: x509.Certificate) -> bool:
    """Check that the private key belongs to the certificate."""
    try:
        key = serialization.load_pem_private_key(Path(key_path).read_bytes(), password=None)
    except OSError as e:
        raise CertificateFileError(f"Can't read key {key_path}: {e}") from e
    except (ValueError, TypeError) as e:
        logger.warning(f"Private key {key_path} is unparseable: {e}")
        return False

    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return key.public_key().public_bytes(*fmt) == certificate.public_key().public_bytes(*fmt)


def needs_renewal(
    cert_path: Path,
    key_path: Path,
    renew_within: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """Decide whether a certificate must be (re)issued.

    Missing files mean the certificate does not exist yet. A key that does
    not match the certificate is treated like a missing pair. An
    unparseable certificate raises MalformedCertificate so the caller can
    escalate it before reissuing.
    """
    cert_path = Path(cert_path)
    key_path = Path(key_path)

    if not (cert_path.is_file() and key_path.is_file()):
        logger.debug(f"Key or certificate missing: {key_path}, {cert_path}")
        return True

    try:
        certificate = load_certificate(cert_path)
    except MalformedCertificate as e:
        logger.error(str(e))
        raise

    if not key_matches_certificate(key_path, certificate):
        logger.warning(f"Key {key_path} does not match certificate {cert_path}")
        return True

    now = now or datetime.now(timezone.utc)
    remaining = certificate.not_valid_after_utc - now
    logger.debug(f"{cert_path} expires in {remaining} (renew within {renew_within})")
    return remaining < renew_within
