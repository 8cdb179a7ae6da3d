"""测试配置和 fixtures"""
import itertools
from decimal import Decimal

import pytest
from unittest.mock import Mock
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from redis import Redis
from redlock import Redlock

import app.models  # noqa: F401  注册所有模型
from app.core.cache import MemoryCache
from app.db.base import Base
from app.models.product import Product
from app.models.stock_records import StockRecord


@pytest.fixture
def db_engine():
    """内存 SQLite，所有会话共用一个连接"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """创建测试数据库会话"""
    SessionLocal = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def concurrent_session_factory(tmp_path):
    """文件型 SQLite，用于多线程并发测试

    每个事务以 BEGIN IMMEDIATE 开始，写事务串行化，模拟数据库行锁下的条件更新。
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=20,
        max_overflow=0,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    finally:
        engine.dispose()


@pytest.fixture
def make_product():
    """创建商品（可选同时建立库存台账）的工厂"""
    counter = itertools.count(1)

    def _make(
        db,
        title=None,
        price="100.00",
        stock=10,
        reserved=0,
        min_stock_level=0,
        reorder_point=0,
        cost_price="50.00",
        track_inventory=True,
        is_active=True,
        with_record=True,
    ):
        n = next(counter)
        product = Product(
            sku=f"SKU-{n:03d}",
            title=title or f"测试商品{n}",
            slug=f"test-product-{n}",
            price=Decimal(price),
            images=[f"https://cdn.example.com/p{n}.jpg"],
            brand="测试品牌",
            category="测试分类",
            is_active=is_active,
            track_inventory=track_inventory,
        )
        db.add(product)
        db.flush()
        if with_record:
            db.add(StockRecord(
                product_id=product.id,
                sku=product.sku,
                current_stock=stock,
                reserved_stock=reserved,
                available_stock=stock - reserved,
                min_stock_level=min_stock_level,
                reorder_point=reorder_point,
                max_stock_level=1000,
                cost_price=Decimal(cost_price),
                selling_price=Decimal(price),
            ))
        db.commit()
        return product

    return _make


class FakeCartStore:
    """内存购物车，接口与 RedisCartStore 一致"""

    def __init__(self):
        self.carts = {}
        self.save_calls = []

    def get_cart(self, user_id):
        return {"items": list(self.carts.get(user_id, []))}

    def save_cart(self, user_id, items):
        self.save_calls.append((user_id, list(items)))
        if items:
            self.carts[user_id] = list(items)
        else:
            self.carts.pop(user_id, None)


@pytest.fixture
def cart_store():
    return FakeCartStore()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    redis_mock.scan_iter.return_value = iter([])
    return redis_mock


@pytest.fixture
def mock_redlock():
    """创建模拟 Redlock 分布式锁"""
    redlock_mock = Mock(spec=Redlock)
    lock_mock = Mock()
    redlock_mock.lock.return_value = lock_mock
    redlock_mock.unlock.return_value = True
    return redlock_mock
