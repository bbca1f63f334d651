import uuid
from dataclasses import dataclass
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from app.api.core.config import Settings, get_configuration
from app.api.core.logger import setup_logging
from app.api.db.database import check_server, close_pool, get_db, provision_ephemeral
from app.api.startup import RunningServer, bind_listener, create_app, run


@dataclass
class TestApp:
    """A server running against its own freshly provisioned database."""

    __test__ = False

    settings: Settings
    engine: AsyncEngine
    server: RunningServer

    @property
    def address(self) -> str:
        return self.server.url

    async def post_subscriptions(self, body: str) -> httpx.Response:
        async with httpx.AsyncClient() as client:
            return await client.post(
                f"{self.address}/subscriptions",
                content=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )


@pytest_asyncio.fixture
async def spawn_app():
    """
    Provision a uniquely named, migrated database and serve the app on a random port.

    Skips when the configured PostgreSQL server is unreachable; any failure
    after that (create database, migrate) fails the test.
    """
    setup_logging()

    configuration = get_configuration()
    if not await check_server(configuration.database):
        pytest.skip("PostgreSQL server not reachable for integration tests")

    settings = configuration.with_database_name(str(uuid.uuid4()))
    engine = await provision_ephemeral(settings.database)

    listener = bind_listener("127.0.0.1", 0)
    server = run(listener, engine)

    yield TestApp(settings=settings, engine=engine, server=server)

    await server.stop()
    listener.close()
    await close_pool(engine)


@pytest.fixture
def mock_session():
    """AsyncSession stand-in: ``add`` is sync, ``commit``/``rollback`` are awaited."""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def app(mock_session):
    """Application with the request-scoped session replaced by ``mock_session``."""
    app = create_app(MagicMock(spec=AsyncEngine))

    async def override_get_db():
        yield mock_session

    app.dependency_overrides[get_db] = override_get_db
    return app
