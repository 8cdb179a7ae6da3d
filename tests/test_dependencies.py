"""依赖注入单元测试"""
from unittest.mock import Mock, patch
from sqlalchemy.orm import Session
from redis import Redis
from redlock import Redlock

from app.core.cache import TieredCache
from app.core.dependencies import (
    get_cache,
    get_cart_store,
    get_db,
    get_inventory_service,
    get_order_service,
    get_redis,
    get_redlock,
)
from app.core.redis import app_cache
from app.services.cart_service import RedisCartStore
from app.services.inventory_service import InventoryService
from app.services.order_service import OrderService


class TestDependencies:
    """依赖注入测试类"""

    def test_get_db(self):
        """测试数据库会话依赖"""
        with patch('app.core.dependencies.SessionLocal') as mock_session_local:
            db_mock = Mock(spec=Session)
            mock_session_local.return_value = db_mock

            # 获取生成器
            gen = get_db()
            db = next(gen)

            assert db == db_mock
            mock_session_local.assert_called_once()

            # 测试清理
            gen.close()
            db_mock.close.assert_called_once()

    def test_get_redis(self):
        with patch('app.core.dependencies.redis_client') as mock_redis_client:
            assert get_redis() == mock_redis_client

    def test_get_redlock(self):
        with patch('app.core.dependencies.redlock') as mock_redlock:
            assert get_redlock() == mock_redlock

    def test_get_cache_is_shared(self):
        """测试缓存是进程级单例，熔断状态跨请求共享"""
        assert get_cache() is app_cache
        assert get_cache() is get_cache()
        assert isinstance(app_cache, TieredCache)

    def test_get_cart_store(self):
        redis_mock = Mock(spec=Redis)

        store = get_cart_store(redis_mock)

        assert isinstance(store, RedisCartStore)
        assert store.redis == redis_mock

    def test_get_inventory_service(self):
        """测试库存服务依赖注入"""
        db_mock = Mock(spec=Session)
        cache_mock = Mock()
        redlock_mock = Mock(spec=Redlock)

        service = get_inventory_service(db=db_mock, cache=cache_mock, rlock=redlock_mock)

        assert isinstance(service, InventoryService)
        assert service.db == db_mock
        assert service.cache == cache_mock
        assert service.rlock == redlock_mock
        assert service.catalog.cache.cache == cache_mock

    def test_get_inventory_service_without_cache(self):
        """测试缓存和锁不可用时的服务创建"""
        db_mock = Mock(spec=Session)

        service = get_inventory_service(db=db_mock, cache=None, rlock=None)

        assert service.cache is None
        assert service.rlock is None
        assert service.catalog.cache is None

    def test_get_order_service_shares_session(self):
        """测试订单服务与库存服务共用同一个会话"""
        db_mock = Mock(spec=Session)
        inventory = get_inventory_service(db=db_mock, cache=None, rlock=None)
        cart_store = Mock()

        service = get_order_service(db=db_mock, inventory=inventory, cart_store=cart_store)

        assert isinstance(service, OrderService)
        assert service.db is inventory.db
        assert service.inventory is inventory
        assert service.operator is inventory.operator
        assert service.cart_store is cart_store
