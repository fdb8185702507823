"""Exception hierarchy for the certificate lifecycle engine."""


class AutocertError(Exception):
    """Base class for all errors raised by acme_autocert."""


class ConfigurationError(AutocertError):
    """Malformed engine or job configuration. Fatal at startup."""


class IssuanceError(AutocertError):
    """A single issuance attempt for one job failed."""

    def __init__(self, message: str, job_name: str = None):
        self.job_name = job_name
        if job_name:
            message = f"{job_name}: {message}"
        super().__init__(message)


class ChallengeUnavailable(IssuanceError):
    """The CA offered no HTTP-01 challenge for a domain."""


class ValidationFailed(IssuanceError):
    """The CA rejected the HTTP-01 proof for a domain."""


class AcmeNetworkError(IssuanceError):
    """Transport or protocol failure talking to the ACME server."""


class IssuanceTimeout(IssuanceError):
    """Validation or finalization did not complete before the deadline."""


class CertificateFileError(IssuanceError):
    """A key or certificate file could not be read or written."""


class MalformedCertificate(AutocertError):
    """An existing certificate file is present but cannot be parsed."""

    def __init__(self, path, reason: str):
        self.path = path
        super().__init__(f"Malformed certificate at {path}: {reason}")


class StartupIssuanceError(AutocertError):
    """Issuance failed during the startup pass; the process must not start."""


class TlsBindingError(AutocertError):
    """A TLS context could not be built from a job's key and certificate."""
