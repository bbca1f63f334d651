import asyncio
import logging

from app.api.core.config import get_configuration
from app.api.core.logger import setup_logging
from app.api.db.database import close_pool, connect_pool
from app.api.startup import bind_listener, run

logger = logging.getLogger("app")


async def serve() -> None:
    """Load settings, open the production pool and serve until stopped.

    Configuration and connection errors propagate: the process must not
    serve traffic without valid settings and a working pool.
    """
    settings = get_configuration()
    engine = await connect_pool(settings.database)

    try:
        listener = bind_listener(settings.application.host, settings.application.port)
        try:
            server = run(listener, engine)
            logger.info(f"Subscription intake API listening on {server.url}")
            await server
        finally:
            listener.close()
    finally:
        await close_pool(engine)


if __name__ == "__main__":
    setup_logging()
    asyncio.run(serve())
