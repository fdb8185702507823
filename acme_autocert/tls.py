"""TLS contexts and listener configuration for issued certificates."""

import logging
import ssl
from pathlib import Path
from typing import Iterable, List, Optional

from hypercorn.config import Config as HypercornConfig

from .errors import TlsBindingError
from .models import CertJob, TlsBinding

logger = logging.getLogger(__name__)


def create_ssl_context(key_path: Path, cert_path: Path) -> ssl.SSLContext:
    """Create a server-side SSL context from a key and chain file."""
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(str(cert_path), str(key_path))
    except (ssl.SSLError, OSError) as e:
        raise TlsBindingError(f"Can't load {cert_path} / {key_path}: {e}") from e
    return context


def ready_jobs(jobs: Iterable[CertJob]) -> List[CertJob]:
    """Jobs whose key and certificate files are both on disk."""
    ready = []
    for job in jobs:
        if job.key_and_cert_present():
            ready.append(job)
        else:
            logger.debug(f"{job.name}: no certificate yet, not binding {job.bind_address}")
    return ready


def bind_certificates(jobs: Iterable[CertJob]) -> List[TlsBinding]:
    """Build one TLS binding per ready job on its first address.

    Expiry is not checked here; presence is enough. Failures are fatal.
    """
    bindings = []
    for job in ready_jobs(jobs):
        context = create_ssl_context(job.key_path, job.cert_path)
        bindings.append(TlsBinding(address=job.bind_address, context=context, job=job))
        logger.info(f"Bound certificate {job.name} to {job.bind_address}")
    return bindings


def hypercorn_configs(jobs: Iterable[CertJob], log_level: Optional[str] = None) -> List[HypercornConfig]:
    """Hypercorn configs serving each ready job over TLS."""
    configs = []
    for job in ready_jobs(jobs):
        # Fail early on unusable files rather than inside hypercorn
        create_ssl_context(job.key_path, job.cert_path)

        config = HypercornConfig()
        config.bind = [job.bind_address]
        config.certfile = str(job.cert_path)
        config.keyfile = str(job.key_path)
        config.alpn_protocols = ['h2', 'http/1.1']
        if log_level:
            config.loglevel = log_level
        configs.append(config)
    return configs
