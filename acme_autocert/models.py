"""Data models for the certificate lifecycle engine."""

import re
import ssl
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)

from .config import Config
from .paths import resolve_path

DEFAULT_RENEW_WITHIN = timedelta(days=30)
DEFAULT_CHECK_EVERY = timedelta(hours=12)

_EMAIL_RE = re.compile(r'^[^@]+@[^@]+\.[^@]+$')


def _validate_addr(addr: str) -> str:
    addr = addr.strip()
    host, sep, port = addr.rpartition(':')
    if not sep or not host:
        raise ValueError(f'Bind address must be host:port, got {addr!r}')
    if not port.isdigit() or not (0 <= int(port) <= 65535):
        raise ValueError(f'Invalid port in bind address {addr!r}')
    if host.startswith('[') != host.endswith(']'):
        raise ValueError(f'Unbalanced IPv6 brackets in {addr!r}')
    return addr


def _validate_domains(v: List[str]) -> List[str]:
    if not v:
        raise ValueError("At least one domain required")
    if len(v) > 100:  # Let's Encrypt limit
        raise ValueError("Maximum 100 domains per certificate")

    cleaned = []
    for domain in v:
        domain = domain.strip().lower()
        if not domain:
            continue
        if '*' in domain:
            raise ValueError(f'Wildcard domains need DNS-01 and are not supported: {domain}')
        # DNSName entries must be A-labels; IDNs are configured in punycode
        if not all(c.isascii() and (c.isalnum() or c in '-.') for c in domain):
            raise ValueError(f'Invalid domain: {domain}')
        cleaned.append(domain)

    if not cleaned:
        raise ValueError("No valid domains provided")

    if len(cleaned) != len(set(cleaned)):
        raise ValueError("Duplicate domains not allowed")

    return cleaned


def _validate_email(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not _EMAIL_RE.match(v):
        raise ValueError('Invalid email format')
    return v.lower()


class CertJobConfig(BaseModel):
    """One configured domain set, before its paths are resolved."""
    model_config = ConfigDict(extra='forbid')

    addrs: List[str] = Field(..., min_length=1)
    domains: List[str]
    email: Optional[str] = None
    production: bool = True
    renew_within: timedelta = Field(
        default=DEFAULT_RENEW_WITHIN,
        validation_alias=AliasChoices('renew_within', 'renewal_window'),
    )
    check_every: timedelta = DEFAULT_CHECK_EVERY
    key_path: Optional[Path] = None
    cert_path: Optional[Path] = None

    @field_validator('addrs')
    @classmethod
    def validate_addrs(cls, v: List[str]) -> List[str]:
        return [_validate_addr(addr) for addr in v]

    @field_validator('domains')
    @classmethod
    def validate_domains(cls, v: List[str]) -> List[str]:
        return _validate_domains(v)

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        return _validate_email(v)

    @field_validator('key_path', 'cert_path', mode='before')
    @classmethod
    def empty_path_is_default(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('renew_within')
    @classmethod
    def validate_renew_within(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError('renew_within must not be negative')
        return v

    @field_validator('check_every')
    @classmethod
    def validate_check_every(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError('check_every must be positive')
        return v

    def resolve(self, ssl_directory: Path) -> 'CertJob':
        """Apply path defaults against the engine's SSL directory."""
        return CertJob(
            addrs=self.addrs,
            domains=self.domains,
            email=self.email,
            production=self.production,
            renew_within=self.renew_within,
            check_every=self.check_every,
            key_path=resolve_path(self.key_path, "key", ssl_directory, self.domains),
            cert_path=resolve_path(self.cert_path, "cert", ssl_directory, self.domains),
        )


class CertJob(BaseModel):
    """A registered domain set with resolved key and certificate paths."""
    model_config = ConfigDict(frozen=True)

    addrs: List[str]
    domains: List[str]
    email: Optional[str] = None
    production: bool = True
    renew_within: timedelta = DEFAULT_RENEW_WITHIN
    check_every: timedelta = DEFAULT_CHECK_EVERY
    key_path: Path
    cert_path: Path

    @property
    def name(self) -> str:
        return self.domains[0]

    @property
    def bind_address(self) -> str:
        return self.addrs[0]

    @property
    def acme_directory_url(self) -> str:
        return Config.directory_url(self.production)

    def resolve(self, ssl_directory: Path) -> 'CertJob':
        """Re-resolving keeps absolute paths untouched."""
        return self.model_copy(update={
            'key_path': resolve_path(self.key_path, "key", ssl_directory, self.domains),
            'cert_path': resolve_path(self.cert_path, "cert", ssl_directory, self.domains),
        })

    def key_and_cert_present(self) -> bool:
        return self.key_path.is_file() and self.cert_path.is_file()


class EngineConfig(BaseModel):
    """Engine-level configuration as read from JSON."""
    model_config = ConfigDict(extra='forbid')

    nonce_directory: Path = Field(default_factory=lambda: Path(Config.NONCE_DIRECTORY))
    ssl_directory: Path = Field(default_factory=lambda: Path(Config.SSL_DIRECTORY))
    cert_builders: List[CertJobConfig] = Field(default_factory=list)


class JobState(str, Enum):
    """Lifecycle states of a job inside the scheduler."""
    UNCHECKED = "unchecked"
    ISSUING = "issuing"
    ISSUED = "issued"
    FAILED = "failed"
    WAITING = "waiting"


class JobStatus(BaseModel):
    """Runtime record of the last check and issuance of a job."""
    job_name: str
    state: JobState = JobState.UNCHECKED
    last_checked: Optional[datetime] = None
    last_issued: Optional[datetime] = None
    last_error: Optional[str] = None

    @field_serializer('last_checked', 'last_issued')
    def serialize_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None


class IssuedCertificate(BaseModel):
    """Metadata of a freshly issued certificate."""
    cert_name: str
    domains: List[str]
    email: Optional[str] = None
    acme_directory_url: str
    expires_at: datetime
    issued_at: datetime
    fingerprint: str
    cert_path: Path
    key_path: Path

    @field_serializer('expires_at', 'issued_at')
    def serialize_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None


@dataclass
class TlsBinding:
    """A listener-ready TLS context for one job's first bind address."""
    address: str
    context: ssl.SSLContext
    job: CertJob
