"""FastAPI host application and hypercorn listeners driven by the engine."""

import asyncio
import logging
from typing import Awaitable, Optional, Tuple

from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HypercornConfig

from . import __version__
from .config import Config
from .manager import RenewalEngine
from .models import JobState

logger = logging.getLogger(__name__)

RESTART_POLL_SECONDS = 1.0
LISTENER_READY_TIMEOUT = 10.0


def _connect_address(bind: str) -> Tuple[str, int]:
    """Loopback-reachable (host, port) for a hypercorn ``host:port`` bind."""
    host, _, port = bind.rpartition(':')
    host = host.strip('[]')
    if host in ('', '0.0.0.0'):
        host = '127.0.0.1'
    elif host == '::':
        host = '::1'
    return host, int(port)


async def wait_for_listener(bind: str, server: asyncio.Task,
                            timeout: float = LISTENER_READY_TIMEOUT) -> None:
    """Return once ``bind`` accepts TCP connections.

    Raises the server task's error if it stops first, OSError on timeout.
    """
    if bind.startswith(('unix:', 'fd://')):
        return

    host, port = _connect_address(bind)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if server.done():
            server.result()
            raise OSError(f"Listener on {bind} stopped before accepting connections")
        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError:
            if loop.time() > deadline:
                raise
            await asyncio.sleep(0.05)
            continue
        writer.close()
        await writer.wait_closed()
        logger.debug(f"Listener on {bind} is accepting connections")
        return


def create_app(engine: RenewalEngine, app: Optional[FastAPI] = None) -> FastAPI:
    """Attach the challenge route and a health endpoint to an application."""
    app = app or FastAPI(title="acme-autocert", version=__version__)
    engine.register(app)

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        statuses = engine.statuses()
        failed = [name for name, status in statuses.items() if status.state == JobState.FAILED]
        return {
            "status": "degraded" if failed else "healthy",
            "scheduler": bool(engine.scheduler and engine.scheduler.is_running()),
            "restart_requested": engine.restart_requested,
            "certificates": {
                name: status.model_dump(mode="json") for name, status in statuses.items()
            },
        }

    return app


async def _watch_engine(engine: RenewalEngine, ready: Optional[Awaitable] = None) -> None:
    """Run the blocking startup pass off-loop, then wait for a restart request.

    ``ready`` is awaited first; the challenge route must be reachable before
    any issuance starts.
    """
    if ready is not None:
        await ready
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, engine.start)
    while not engine.restart_requested:
        await asyncio.sleep(RESTART_POLL_SECONDS)


async def run_server(app: FastAPI, engine: RenewalEngine, http_bind: Optional[str] = None) -> bool:
    """Serve plain HTTP and every ready TLS job until a restart is requested.

    The HTTP listener is up before the startup issuance pass begins so the CA
    can reach the challenge route.

    Returns:
        True if the engine requested a restart
    """
    shutdown_event = asyncio.Event()

    http_config = HypercornConfig()
    http_config.bind = [http_bind or Config.HTTP_BIND]
    configs = [http_config] + engine.hypercorn_configs(log_level=Config.LOG_LEVEL)

    servers = [
        asyncio.create_task(serve(app, config, shutdown_trigger=shutdown_event.wait))
        for config in configs
    ]
    for config in configs:
        logger.info(f"Listening on {', '.join(config.bind)}{' (TLS)' if config.ssl_enabled else ''}")

    watcher = asyncio.create_task(
        _watch_engine(engine, wait_for_listener(http_config.bind[0], servers[0]))
    )
    try:
        done, _ = await asyncio.wait([watcher, *servers], return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            # Re-raise startup issuance failures and listener errors
            task.result()
    finally:
        engine.stop()
        shutdown_event.set()
        if not watcher.done():
            watcher.cancel()
        await asyncio.gather(*servers, return_exceptions=True)

    return engine.restart_requested
