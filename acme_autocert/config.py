"""Centralized configuration management for acme_autocert."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class Config:
    """Configuration class with all environment variables."""

    # Logging
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO').upper()
    PYTHON_LOG_FORMAT: str = os.getenv(
        'PYTHON_LOG_FORMAT',
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # ACME Configuration
    ACME_DIRECTORY_URL: str = os.getenv('ACME_DIRECTORY_URL',
        'https://acme-v02.api.letsencrypt.org/directory')
    ACME_STAGING_URL: str = os.getenv('ACME_STAGING_URL',
        'https://acme-staging-v02.api.letsencrypt.org/directory')
    ACME_POLL_MAX_ATTEMPTS: int = int(os.getenv('ACME_POLL_MAX_ATTEMPTS', '60'))
    ACME_POLL_INTERVAL_SECONDS: int = int(os.getenv('ACME_POLL_INTERVAL_SECONDS', '2'))
    ACME_NETWORK_TIMEOUT: int = int(os.getenv('ACME_NETWORK_TIMEOUT', '45'))
    ISSUANCE_TIMEOUT_SECONDS: int = int(os.getenv('ISSUANCE_TIMEOUT_SECONDS', '600'))

    # Certificate Configuration
    RSA_KEY_SIZE: int = int(os.getenv('RSA_KEY_SIZE', '2048'))

    # Engine directories
    NONCE_DIRECTORY: str = os.getenv('NONCE_DIRECTORY', '/var/tmp/lets_encrypt')
    SSL_DIRECTORY: str = os.getenv('SSL_DIRECTORY', '/ssl')

    # Scheduling
    SCHEDULER_MAX_WORKERS: int = int(os.getenv('SCHEDULER_MAX_WORKERS', '4'))

    # Host process
    HTTP_BIND: str = os.getenv('HTTP_BIND', '0.0.0.0:80')
    RESTART_EXIT_CODE: int = int(os.getenv('RESTART_EXIT_CODE', '3'))
    ACME_AUTOCERT_CONFIG: str = os.getenv('ACME_AUTOCERT_CONFIG_VAR', 'ACME_AUTOCERT_CONFIG')

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration values."""
        errors = []

        if not cls.ACME_DIRECTORY_URL.startswith('https://'):
            errors.append("ACME_DIRECTORY_URL must be an https:// URL")

        if not cls.ACME_STAGING_URL.startswith('https://'):
            errors.append("ACME_STAGING_URL must be an https:// URL")

        if cls.RSA_KEY_SIZE < 2048:
            errors.append(f"RSA_KEY_SIZE must be at least 2048, got {cls.RSA_KEY_SIZE}")

        if cls.ACME_POLL_MAX_ATTEMPTS < 1:
            errors.append("ACME_POLL_MAX_ATTEMPTS must be positive")

        if cls.ACME_POLL_INTERVAL_SECONDS < 0:
            errors.append("ACME_POLL_INTERVAL_SECONDS must not be negative")

        # Polling must fit inside the overall issuance deadline
        if cls.ACME_NETWORK_TIMEOUT >= cls.ISSUANCE_TIMEOUT_SECONDS:
            errors.append("ACME_NETWORK_TIMEOUT must be less than ISSUANCE_TIMEOUT_SECONDS")

        if cls.SCHEDULER_MAX_WORKERS < 1:
            errors.append("SCHEDULER_MAX_WORKERS must be positive")

        if errors:
            raise ConfigurationError(f"Configuration errors: {'; '.join(errors)}")

    @classmethod
    def directory_url(cls, production: bool) -> str:
        """ACME directory for production or staging issuance."""
        return cls.ACME_DIRECTORY_URL if production else cls.ACME_STAGING_URL


def load_engine_config(source: Union[str, bytes, dict]):
    """Parse a JSON engine configuration document.

    The document has the shape::

        {"nonce_directory": "/var/nonce",
         "ssl_directory": "ssl",
         "cert_builders": [{"addrs": ["0.0.0.0:8089"],
                            "domains": ["example.com"],
                            "email": "ops@example.com"}]}

    Returns:
        EngineConfig; job paths are resolved when jobs are added to an engine
    """
    from pydantic import ValidationError

    from .models import EngineConfig

    try:
        if isinstance(source, dict):
            return EngineConfig.model_validate(source)
        return EngineConfig.model_validate_json(source)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid engine configuration: {e}") from e


def engine_config_from_env(env_var: Optional[str] = None):
    """Build an EngineConfig from the JSON held in an environment variable."""
    env_var = env_var or Config.ACME_AUTOCERT_CONFIG
    raw = os.getenv(env_var)
    if raw is None:
        raise ConfigurationError(f"{env_var}: environment variable not set")
    logger.info(f"Loading engine configuration from ${env_var}")
    return load_engine_config(raw)


def engine_config_from_file(path: Union[str, Path]):
    """Build an EngineConfig from a JSON file."""
    try:
        raw = Path(path).read_text()
    except OSError as e:
        raise ConfigurationError(f"Can't read configuration file {path}: {e}") from e
    return load_engine_config(raw)
