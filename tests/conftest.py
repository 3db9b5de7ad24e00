"""Pytest configuration and fixtures."""
import os
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.auth import create_access_token
from marketplace.config import get_settings
from marketplace.database import Base, get_db
from marketplace.main import app, init_abuse_protection
from marketplace.models.product import CatalogProduct, CatalogProductStatus
from marketplace.models.shop import Shop, ShopProduct
from marketplace.services.product_matcher import normalize_text
from marketplace.services.spreadsheet import TEMPLATE_COLUMNS, write_table
from marketplace.services.staging import stage_upload


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the app uses."""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}
        self.transactions = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def incr(self, key):
        self._check()
        value = int(self.values.get(key, 0)) + 1
        self.values[key] = str(value)
        return value

    async def pexpire(self, key, milliseconds):
        self._check()
        self.ttls[key] = milliseconds / 1000
        return True

    async def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return True

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            elif self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def sadd(self, key, *members):
        self._check()
        current = self.sets.setdefault(key, set())
        before = len(current)
        current.update(members)
        return len(current) - before

    async def srem(self, key, *members):
        self._check()
        current = self.sets.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        return removed

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        return None


class FakePipeline:
    """Queues commands and runs them together on execute()."""

    def __init__(self, redis):
        self.redis = redis
        self.queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.queued = []

    def __getattr__(self, name):
        command = getattr(self.redis, name)

        def queue(*args, **kwargs):
            self.queued.append((name, command, args, kwargs))
            return self

        return queue

    async def execute(self):
        self.redis._check()
        self.redis.transactions.append([name for name, _, _, _ in self.queued])
        results = [await command(*args, **kwargs) for _, command, args, kwargs in self.queued]
        self.queued = []
        return results


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(session_factory, fake_redis):
    """TestClient backed by the test database and a fake Redis."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    init_abuse_protection(app, fake_redis, get_settings())

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def make_shop(db):
    def _make_shop(owner_id="seller-1", name="Lilongwe Phones", **kwargs):
        shop = Shop(owner_id=owner_id, name=name, **kwargs)
        db.add(shop)
        db.commit()
        db.refresh(shop)
        return shop

    return _make_shop


@pytest.fixture
def shop(make_shop):
    return make_shop()


@pytest.fixture
def add_product(db):
    def _add_product(name, brand=None, category_name=None, **kwargs):
        kwargs.setdefault("status", CatalogProductStatus.APPROVED.value)
        product = CatalogProduct(
            name=name,
            normalized_name=normalize_text(name),
            brand=brand,
            category_name=category_name,
            **kwargs,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _add_product


@pytest.fixture
def list_product(db):
    """Put a catalog product into a shop's live inventory."""

    def _list_product(shop, product, sku=None, stock_quantity=1):
        listing = ShopProduct(
            shop_id=shop.id,
            product_id=product.id,
            sku=sku,
            base_price=Decimal("1000.00"),
            price=Decimal("1052.60"),
            stock_quantity=stock_quantity,
        )
        db.add(listing)
        db.commit()
        return listing

    return _list_product


@pytest.fixture
def build_upload():
    """Build a CSV (or XLSX) payload from a list of {column: value} dicts."""

    def _build_upload(rows, columns=None, file_format="csv"):
        columns = columns or TEMPLATE_COLUMNS + sorted(
            {key for row in rows for key in row if key not in TEMPLATE_COLUMNS}
        )
        table = [[str(row.get(column, "")) for column in columns] for row in rows]
        return write_table(columns, table, file_format)

    return _build_upload


@pytest.fixture
def auth_headers():
    def _auth_headers(user_id="seller-1", role="SELLER"):
        return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}

    return _auth_headers


@pytest.fixture
def stage(db, build_upload):
    """Stage rows for a shop through the real upload path."""

    def _stage(shop, rows, file_format="csv", settings=None):
        return stage_upload(
            db,
            shop,
            f"products.{file_format}",
            None,
            build_upload(rows, file_format=file_format),
            user_id=shop.owner_id,
            settings=settings,
        )

    return _stage
