from __future__ import annotations
from dotenv import load_dotenv
load_dotenv()  # Load .env file before importing app modules

import asyncio
import logging
import os
import signal
import socket
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable, List
import uvicorn
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from bsec_exporter.config import LOG_LEVEL, load_settings, parse_listen_addr
from bsec_exporter.errors import BsecExporterError, ConfigurationError
from bsec_exporter.routes import router
from bsec_exporter.service import ExporterService

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s %(levelname)s: %(name)s: %(message)s'
)

logger = logging.getLogger(__name__)

# Prometheus scrapes every few seconds; keep them out of the INFO log
QUIET_PATHS = ("/metrics", "/health")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log request and response information."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"

        response = await call_next(request)

        process_time = time.time() - start_time
        level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} | "
            f"IP: {client_ip} | "
            f"Status: {response.status_code} | "
            f"Time: {process_time:.3f}s"
        )
        return response


def _request_server_exit() -> None:
    logger.critical("Sampling stopped after a fatal engine error, shutting down")
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service: ExporterService | None = getattr(app.state, "service", None)
    if service is None:
        service = ExporterService()
        app.state.service = service
    if service.on_terminated is None:
        # served by `uvicorn main:app`: no Server handle, ask uvicorn to shut down like Ctrl+C would
        service.on_terminated = _request_server_exit
    service.start()
    try:
        yield
    finally:
        # the final state save runs on the sampling thread; wait for it off the event loop
        await asyncio.to_thread(service.stop)


def create_app(service: ExporterService | None = None) -> FastAPI:
    app = FastAPI(title="BSEC Exporter", version="0.1.0", lifespan=lifespan)
    if service is not None:
        app.state.service = service

    app.add_middleware(LoggingMiddleware)
    app.include_router(router)
    return app


def bind_socket(addr: str) -> socket.socket:
    host, port = parse_listen_addr(addr)
    family, type_, proto, _, sockaddr = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)[0]
    sock = socket.socket(family, type_, proto)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind(sockaddr)
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    logger.info(f"Listening on {addr}")
    return sock


def run() -> None:
    try:
        settings = load_settings()
        service = ExporterService(settings)
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        sys.exit(2)
    except BsecExporterError as e:
        logger.critical(f"Startup failed: {e}")
        sys.exit(1)

    try:
        sockets: List[socket.socket] = [bind_socket(a) for a in settings.exporter.listen_addrs]
    except OSError as e:
        logger.critical(f"Cannot listen: {e}")
        sys.exit(2)

    app = create_app(service)
    server = uvicorn.Server(uvicorn.Config(app, log_level=LOG_LEVEL.lower(), lifespan="on"))

    def _stop_server() -> None:
        server.should_exit = True

    # a fatal engine error ends sampling; take the HTTP server down with it
    service.on_terminated = _stop_server
    server.run(sockets=sockets)

    if service.scheduler.fatal_error is not None:
        logger.critical(f"Exiting after fatal engine error: {service.scheduler.fatal_error}")
        sys.exit(1)


app = create_app()

if __name__ == "__main__":
    run()
