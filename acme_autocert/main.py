"""Main entry point for acme-autocert."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import Config, engine_config_from_env, engine_config_from_file
from .errors import ConfigurationError, StartupIssuanceError, TlsBindingError
from .logging_config import setup_logging
from .manager import RenewalEngine
from .server import create_app, run_server

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="acme-autocert",
        description="Serve ACME HTTP-01 challenges and keep TLS certificates issued and renewed.",
    )
    parser.add_argument("--config", help="JSON configuration file (default: read from the environment)")
    parser.add_argument("--env-var", default=Config.ACME_AUTOCERT_CONFIG,
                        help="Environment variable holding the JSON configuration")
    parser.add_argument("--http-bind", default=Config.HTTP_BIND,
                        help="Plain HTTP listener for challenges (host:port)")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Run until a restart is needed.

    Exit codes: 0 on clean shutdown, ``Config.RESTART_EXIT_CODE`` when new
    certificates require a restart, 1 on startup failure, 2 on bad
    configuration.
    """
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        Config.validate()
        if args.config:
            engine_config = engine_config_from_file(args.config)
        else:
            engine_config = engine_config_from_env(args.env_var)
        engine = RenewalEngine.from_config(engine_config)
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        return 2

    app = create_app(engine)

    try:
        restart = asyncio.run(run_server(app, engine, args.http_bind))
    except StartupIssuanceError as e:
        logger.critical(f"Startup issuance failed: {e}")
        return 1
    except TlsBindingError as e:
        logger.critical(f"TLS binding failed: {e}")
        return 1
    except OSError as e:
        logger.critical(f"Listener failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0

    if restart:
        logger.warning(f"Restart required ({engine.restart_signal.reason}), exiting with {Config.RESTART_EXIT_CODE}")
        return Config.RESTART_EXIT_CODE
    return 0


if __name__ == "__main__":
    sys.exit(main())
