"""
HTTP bootstrap: builds the FastAPI application around a shared pool and
serves it with uvicorn on a socket the caller has already bound.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.core.exceptions import (
    BindError,
    PersistenceError,
    general_exception_handler,
    http_exception_handler,
    persistence_exception_handler,
    validation_exception_handler,
)
from app.api.db.database import create_session_factory
from app.api.modules import router as api_router
from app.api.utils.response_payloads import empty_response

APP_NAME = "Newsletter Subscriptions"
APP_VERSION = "1.0.0"

logger = logging.getLogger("app")


def health_check():
    return empty_response()


def create_app(engine: AsyncEngine) -> FastAPI:
    """
    Build the application and attach the shared pool to its state.

    The engine and a single session factory are created once here; every
    request borrows a connection from that pool through ``get_db``.

    Args:
        engine (AsyncEngine): Live pool shared by all handlers.

    Returns:
        FastAPI: Application with ``GET /health_check`` and ``POST /subscriptions``.
    """
    app = FastAPI(
        title=f"{APP_NAME} API",
        description=f"{APP_NAME} intake API",
        version=APP_VERSION,
    )
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PersistenceError, persistence_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.add_api_route("/health_check", health_check, methods=["GET"], tags=["Health"])
    app.include_router(api_router)
    return app


def bind_listener(host: str, port: int) -> socket.socket:
    """Bind and listen on ``host:port``; port 0 picks a free ephemeral port."""
    return socket.create_server((host, port))


def _validate_listener(listener) -> tuple[str, int]:
    if not isinstance(listener, socket.socket):
        raise BindError(f"Expected a socket.socket listener, got {type(listener).__name__}")
    if listener.fileno() == -1:
        raise BindError("Listener socket is closed")
    if listener.family not in (socket.AF_INET, socket.AF_INET6):
        raise BindError(f"Unsupported listener address family: {listener.family!r}")
    if listener.type != socket.SOCK_STREAM:
        raise BindError("Listener must be a TCP stream socket")

    try:
        address = listener.getsockname()
        if address[1] == 0:
            raise BindError("Listener socket is not bound to an address")
        listener.listen(socket.SOMAXCONN)
    except OSError as exc:
        raise BindError(f"Listener socket cannot accept connections: {exc}") from exc

    return address[0], address[1]


@dataclass
class RunningServer:
    """Handle on a server started by ``run``.

    Awaiting the handle waits until the server stops; ``stop`` asks it to
    shut down and waits for that to finish.
    """

    server: uvicorn.Server
    task: asyncio.Task
    address: tuple[str, int]

    @property
    def url(self) -> str:
        host, port = self.address
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{port}"

    def __await__(self):
        return self.task.__await__()

    async def stop(self) -> None:
        self.server.should_exit = True
        await self.task


def run(listener: socket.socket, engine: AsyncEngine) -> RunningServer:
    """
    Start serving the application on ``listener``.

    Must be called from a running event loop. The server keeps accepting
    connections until ``RunningServer.stop`` is awaited or the process exits.

    Args:
        listener (socket.socket): Already bound TCP socket.
        engine (AsyncEngine): Live pool shared by all handlers.

    Returns:
        RunningServer: Awaitable handle on the serving task.

    Raises:
        BindError: If the listener is not an open, bound TCP socket.
    """
    address = _validate_listener(listener)

    config = uvicorn.Config(create_app(engine), log_config=None)
    server = uvicorn.Server(config)
    task = asyncio.get_running_loop().create_task(server.serve(sockets=[listener]))

    logger.info(f"Serving on {address[0]}:{address[1]}")
    return RunningServer(server=server, task=task, address=address)
