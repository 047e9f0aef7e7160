"""
Test Suite Configuration
"""
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient
from jose import jwt
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import create_async_engine

from viewtrack.config import Settings
from viewtrack.database.connection import build_session_factory, session_scope
from viewtrack.database.models import Base, Product
from viewtrack.ingestion.ingress import ClientContext
from viewtrack.main import create_app
from viewtrack.pipeline import ViewPipeline

START = datetime(2025, 3, 10, 12, 0, 0)

DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
MOBILE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
)
TABLET_UA = (
    "Mozilla/5.0 (iPad; CPU OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
)
BOT_UA = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"

JWT_SECRET = "test-jwt-secret"
INTERNAL_TOKEN = "test-internal-token"


class ManualClock:
    """Clock advanced explicitly by tests"""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def today(self):
        return self.current.date()

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    settings = Settings(APP_ENV="testing")
    settings.notifier.redis_relay_enabled = False
    settings.notifier.topic_gc_seconds = 0.05
    settings.aggregation.enable_background_tasks = False
    settings.security.jwt_secret_key = SecretStr(JWT_SECRET)
    settings.security.internal_api_token = SecretStr(INTERNAL_TOKEN)
    return settings


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'views.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def pipeline(session_factory, redis, test_settings, clock) -> AsyncGenerator[ViewPipeline, None]:
    pipeline = ViewPipeline(session_factory, redis, settings=test_settings, clock=clock, sleep=no_sleep)
    yield pipeline
    await pipeline.stop()


@pytest_asyncio.fixture
async def client(pipeline) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(pipeline=pipeline)
    transport = ASGITransport(app=app, client=("203.0.113.7", 50000))
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def create_product(factory, name: str = "Launchpad", **fields) -> Product:
    product = Product(
        product_id=fields.pop("product_id", uuid.uuid4()),
        slug=fields.pop("slug", f"{name.lower()}-{uuid.uuid4().hex[:6]}"),
        name=name,
        tagline=fields.pop("tagline", "Ship faster"),
        thumbnail=fields.pop("thumbnail", "https://cdn.example.com/thumb.png"),
        gallery=fields.pop("gallery", ["https://cdn.example.com/1.png"]),
        pricing=fields.pop("pricing", {"type": "free"}),
        status=fields.pop("status", "published"),
        maker_name=fields.pop("maker_name", "Ada Maker"),
        category_name=fields.pop("category_name", "Developer Tools"),
        tags=fields.pop("tags", ["devtools"]),
        **fields,
    )
    async with session_scope(factory) as db:
        db.add(product)
    return product


@pytest_asyncio.fixture
async def product(session_factory) -> Product:
    return await create_product(session_factory)


def user_context(user_id: str, user_agent: str = DESKTOP_UA, country: Optional[str] = None) -> ClientContext:
    headers = {"cf-ipcountry": country} if country else {}
    return ClientContext(user_id=user_id, client_ip="198.51.100.1", user_agent=user_agent, headers=headers)


def anonymous_context(ip: str = "198.51.100.9", user_agent: str = DESKTOP_UA) -> ClientContext:
    return ClientContext(client_ip=ip, user_agent=user_agent)


def bearer(user_id: str) -> dict:
    token = jwt.encode({"sub": user_id}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}
