"""Renewal engine tying jobs, challenge route, TLS binding and scheduling together."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from fastapi import FastAPI
from pydantic import ValidationError

from .acme_client import ACMEClient
from .challenge import create_challenge_router
from .config import Config, engine_config_from_env
from .errors import ConfigurationError
from .models import CertJob, CertJobConfig, EngineConfig, JobStatus, TlsBinding
from .scheduler import CertificateScheduler, RestartSignal
from .tls import bind_certificates, hypercorn_configs

logger = logging.getLogger(__name__)


class RenewalEngine:
    """Owns the configured certificate jobs and their lifecycle.

    Typical use::

        engine = RenewalEngine(nonce_directory="/var/nonce", ssl_directory="ssl")
        engine.add_cert(CertJobConfig(addrs=["0.0.0.0:8089"], domains=["example.com"]))
        engine.register(app)
        bindings = engine.attach_certificates()
        engine.start()
    """

    def __init__(
        self,
        nonce_directory: Union[str, Path, None] = None,
        ssl_directory: Union[str, Path, None] = None,
        issuer=None,
    ):
        self.nonce_directory = Path(nonce_directory or Config.NONCE_DIRECTORY).absolute()
        self.ssl_directory = Path(ssl_directory or Config.SSL_DIRECTORY).absolute()
        self.cert_jobs: List[CertJob] = []
        self.issuer = issuer or ACMEClient(self.ssl_directory / "accounts")
        self.restart_signal = RestartSignal()
        self.scheduler: Optional[CertificateScheduler] = None

    @classmethod
    def from_config(cls, config: EngineConfig, issuer=None) -> 'RenewalEngine':
        """Build an engine and register every configured job once."""
        engine = cls(
            nonce_directory=config.nonce_directory,
            ssl_directory=config.ssl_directory,
            issuer=issuer,
        )
        for cert in config.cert_builders:
            engine.add_cert(cert)
        return engine

    @classmethod
    def from_env(cls, env_var: Optional[str] = None, issuer=None) -> 'RenewalEngine':
        """Build an engine from the JSON configuration in an environment variable."""
        return cls.from_config(engine_config_from_env(env_var), issuer=issuer)

    def add_cert(self, cert: Union[CertJobConfig, CertJob, dict]) -> CertJob:
        """Register a job, resolving its paths against the SSL directory."""
        if self.scheduler is not None:
            raise ConfigurationError("Cannot add certificates after the engine has started")

        if isinstance(cert, dict):
            try:
                cert = CertJobConfig.model_validate(cert)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid certificate job: {e}") from e

        job = cert.resolve(self.ssl_directory)

        for existing in self.cert_jobs:
            if existing.name == job.name:
                raise ConfigurationError(f"Duplicate certificate job for {job.name}")
            shared = {existing.key_path, existing.cert_path} & {job.key_path, job.cert_path}
            if shared:
                raise ConfigurationError(
                    f"{job.name} shares {', '.join(map(str, shared))} with {existing.name}"
                )

        self.cert_jobs.append(job)
        logger.info(f"Registered certificate job {job.name}: key={job.key_path} cert={job.cert_path}")
        return job

    def register(self, app: FastAPI) -> FastAPI:
        """Mount the ACME challenge route on the host application."""
        app.include_router(create_challenge_router(self.nonce_directory))
        return app

    def attach_certificates(self) -> List[TlsBinding]:
        """TLS bindings for every job whose files are already present."""
        return bind_certificates(self.cert_jobs)

    def hypercorn_configs(self, log_level: Optional[str] = None):
        return hypercorn_configs(self.cert_jobs, log_level=log_level)

    def start(self) -> bool:
        """Run the startup issuance pass and arm periodic checks.

        Returns:
            True if periodic checks are running, False if a restart was requested
        """
        if self.scheduler is None:
            self.scheduler = CertificateScheduler(
                self.cert_jobs,
                self.issuer,
                self.nonce_directory,
                restart_signal=self.restart_signal,
            )
        return self.scheduler.start()

    def stop(self):
        if self.scheduler is not None:
            self.scheduler.stop()

    @property
    def restart_requested(self) -> bool:
        return self.restart_signal.is_set()

    def statuses(self) -> Dict[str, JobStatus]:
        if self.scheduler is None:
            return {job.name: JobStatus(job_name=job.name) for job in self.cert_jobs}
        return dict(self.scheduler.statuses)
