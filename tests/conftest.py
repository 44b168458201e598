import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pms_core.api import create_app
from pms_core.config import Settings, get_settings
from pms_core.dependencies import get_channel_adapter, get_db, get_notifier
from pms_core.database import init_models

from .factories import FakeChannelAdapter, RecordingNotifier


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pms.db'}", poolclass=NullPool)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def adapter():
    return FakeChannelAdapter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def webhook_settings():
    return Settings(ENVIRONMENT="test", BEDS24_WEBHOOK_IPS="")


@pytest.fixture
def app(session_factory, adapter, notifier, webhook_settings):
    app = create_app(setup_logging=False)

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_channel_adapter] = lambda: adapter
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_settings] = lambda: webhook_settings
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app, client=("127.0.0.1", 51234))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
