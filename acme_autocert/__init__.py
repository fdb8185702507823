"""ACME certificate issuance and renewal for TLS-terminating servers."""

__version__ = "0.1.0"

from .errors import (
    AutocertError,
    ConfigurationError,
    IssuanceError,
    MalformedCertificate,
    StartupIssuanceError,
)
from .manager import RenewalEngine
from .models import CertJob, CertJobConfig, EngineConfig

__all__ = [
    "RenewalEngine",
    "CertJob",
    "CertJobConfig",
    "EngineConfig",
    "AutocertError",
    "ConfigurationError",
    "IssuanceError",
    "MalformedCertificate",
    "StartupIssuanceError",
]
