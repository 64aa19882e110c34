"""Shared fixtures: a fresh file-backed SQLite database per test, fake Redis, stub inventory check."""

import itertools
import json
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from app.core.database import init_db, make_engine, make_session_factory
from app.models.db_models import User, utcnow
from app.services.listings import ListingService
from app.services.offers import OfferService
from app.services.trade_cache import TradeCache
from app.services.trades import TradeService

VALID_TRADE_URL = "https://steamcommunity.com/tradeoffer/new/?partner=12345&token=abcdEFGH"


class FakePubSub:
    """Replays whatever was published on the subscribed channels, then ends."""

    def __init__(self, redis):
        self.redis = redis
        self.channels = []

    async def subscribe(self, *channels):
        self.channels.extend(channels)

    async def listen(self):
        for ch in self.channels:
            yield {"type": "subscribe", "channel": ch, "data": 1}
        for ch, msg in list(self.redis.published):
            if ch in self.channels:
                yield {"type": "message", "channel": ch, "data": msg}

    async def aclose(self):
        pass


class FakeScript:
    """Stands in for the registered put-if-newer Lua script: keeps whichever projection has the higher version."""

    def __init__(self, redis):
        self.redis = redis

    async def __call__(self, keys=None, args=None):
        self.redis._check()
        key = keys[0]
        value, version, ttl = args
        current = self.redis.store.get(key)
        if current is not None:
            try:
                doc = json.loads(current)
            except ValueError:
                doc = None
            if isinstance(doc, dict) and isinstance(doc.get("version"), int) and doc["version"] > int(version):
                return 0
        self.redis.store[key] = value
        self.redis.ttls[key] = int(ttl)
        return 1


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (decode_responses=True)."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.published = []
        self.scripts = []
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("fake redis is down")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 1

    def pubsub(self):
        return FakePubSub(self)

    def register_script(self, script):
        self.scripts.append(script)
        return FakeScript(self)

    async def aclose(self):
        self.closed = True


class StubInventory:
    """Inventory check double: answers `held`, or raises `error`."""

    def __init__(self, held=False, error=None):
        self.held = held
        self.error = error
        self.calls = []

    async def is_asset_still_held_by(self, steam_id, asset_id):
        self.calls.append((steam_id, asset_id))
        if self.error is not None:
            raise self.error
        return self.held


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'market.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def cache(fake_redis):
    c = TradeCache(enabled=True, client=fake_redis, prefix="test:")
    await c.connect()
    yield c
    await c.close()


@pytest.fixture
def inventory():
    return StubInventory()


@pytest_asyncio.fixture
async def trade_service(session_factory, cache, inventory):
    return TradeService(session_factory, cache=cache, inventory_checker=inventory)


@pytest_asyncio.fixture
async def offer_service(trade_service):
    return OfferService(trades=trade_service)


@pytest_asyncio.fixture
async def listing_service(session_factory, trade_service):
    return ListingService(session_factory, notifier=trade_service.notifier)


@pytest.fixture
def make_user(session_factory):
    counter = itertools.count(1)

    async def _make(balance_usd="100", balance_gel="0", trade_url=VALID_TRADE_URL, is_admin=False):
        n = next(counter)
        async with session_factory() as db, db.begin():
            user = User(
                steam_id=f"7656119800000{n:04d}",
                display_name=f"user{n}",
                balance_usd=Decimal(balance_usd),
                balance_gel=Decimal(balance_gel),
                trade_url=trade_url,
                trade_url_expires_at=utcnow() + timedelta(days=30) if trade_url else None,
                is_admin=is_admin,
            )
            db.add(user)
            await db.flush()
        return user

    return _make


@pytest.fixture
def db_get(session_factory):
    """Fresh read of one row straight from the database."""

    async def _get(model, pk):
        async with session_factory() as db:
            return await db.get(model, pk)

    return _get


@pytest.fixture
def db_rows(session_factory):
    async def _rows(model, *where):
        stmt = select(model).order_by(model.id)
        if where:
            stmt = stmt.where(*where)
        async with session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    return _rows


@pytest.fixture
def db_exec(session_factory):
    """Run a raw statement in its own committed transaction (for arranging clocks / corrupt state)."""

    async def _exec(stmt):
        async with session_factory() as db, db.begin():
            await db.execute(stmt)

    return _exec


@pytest_asyncio.fixture
async def market(make_user, listing_service):
    """A seller with one $10 listing and a buyer holding $15."""
    seller = await make_user(balance_usd="0")
    buyer = await make_user(balance_usd="15")
    item = await listing_service.list_item(seller.id, "21436587", "AK-47 | Redline (Field-Tested)", "10")
    return seller, buyer, item
