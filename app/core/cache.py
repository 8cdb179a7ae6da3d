"""缓存能力接口与实现

CacheBackend 定义 get/set/delete/invalidate_pattern 四个能力，注入到库存操作和
商品读取服务中。TieredCache 以 Redis 为主、进程内存为后备，并带熔断：Redis
连续失败达到阈值后在冷却期内直接走内存，冷却期结束再尝试 Redis。
"""

import fnmatch
import json
import logging
import math
import threading
import time
from typing import Any, Callable, Optional, Tuple

from cachetools import TLRUCache
from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheBackend:
    """缓存能力接口"""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, *keys: str) -> int:
        raise NotImplementedError

    def invalidate_pattern(self, pattern: str) -> int:
        raise NotImplementedError


class RedisCache(CacheBackend):
    """Redis 缓存，值以 JSON 存储"""

    def __init__(self, redis: Redis):
        self.redis = redis

    def get(self, key: str) -> Optional[Any]:
        raw = self.redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl:
            self.redis.setex(key, ttl, payload)
        else:
            self.redis.set(key, payload)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self.redis.delete(*keys)

    def invalidate_pattern(self, pattern: str) -> int:
        # 使用 SCAN 代替 KEYS，避免阻塞 Redis
        keys = list(self.redis.scan_iter(match=pattern, count=500))
        if not keys:
            return 0
        return self.redis.delete(*keys)


def _entry_expiry(_key, entry: Tuple[Any, Optional[float]], now: float) -> float:
    ttl = entry[1]
    return now + ttl if ttl else math.inf


class MemoryCache(CacheBackend):
    """进程内缓存，Redis 不可用时的后备

    基于 cachetools.TLRUCache：每个键单独的 TTL，条目数超过 maxsize 时按最近最少使用淘汰。
    TLRUCache 不是线程安全的，读写都在锁内进行。
    """

    def __init__(self, maxsize: Optional[int] = None, timer: Callable[[], float] = time.monotonic):
        if maxsize is None:
            from app.core.config import settings
            maxsize = settings.LOCAL_CACHE_MAXSIZE
        self._store = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._store.expire()
            return len(self._store)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
        return entry[0] if entry is not None else None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._store[key] = (value, ttl)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._store.pop(key, None) is not None:
                    removed += 1
        return removed

    def invalidate_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
            for key in matched:
                self._store.pop(key, None)
        return len(matched)


class TieredCache(CacheBackend):
    """Redis + 内存两级缓存，带简单熔断器

    写操作和失效操作总是同时作用于内存层，保证熔断切换后内存层不会返回
    熔断前写入、之后已被失效的数据。
    """

    def __init__(
        self,
        primary: Optional[CacheBackend],
        fallback: Optional[CacheBackend] = None,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
    ):
        self.primary = primary
        self.fallback = fallback if fallback is not None else MemoryCache()
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            if self._opened_at is None:
                return False
            if time.monotonic() - self._opened_at >= self.cooldown_seconds:
                # 半开：允许下一次请求试探 Redis
                self._opened_at = None
                self._failures = self.failure_threshold - 1
                return False
            return True

    def _record_success(self):
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def _record_failure(self, error: Exception):
        with self._lock:
            self._failures += 1
            if self._failures >= self.failure_threshold and self._opened_at is None:
                self._opened_at = time.monotonic()
                logger.warning(f"Redis 连续失败 {self._failures} 次，熔断切换到内存缓存: {error}")

    def _call_primary(self, method: str, *args, **kwargs):
        """调用 Redis；返回 (是否成功, 结果)"""
        if self.primary is None or self.is_open:
            return False, None
        try:
            result = getattr(self.primary, method)(*args, **kwargs)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis {method} 失败: {e}")
            self._record_failure(e)
            return False, None
        self._record_success()
        return True, result

    def get(self, key: str) -> Optional[Any]:
        ok, value = self._call_primary("get", key)
        if ok:
            return value
        return self.fallback.get(key)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.fallback.set(key, value, ttl)
        self._call_primary("set", key, value, ttl)

    def delete(self, *keys: str) -> int:
        removed = self.fallback.delete(*keys)
        ok, result = self._call_primary("delete", *keys)
        if self.primary is not None and not ok:
            raise CacheUnavailable(f"Redis 删除失败: {keys}")
        return result if ok else removed

    def invalidate_pattern(self, pattern: str) -> int:
        removed = self.fallback.invalidate_pattern(pattern)
        ok, result = self._call_primary("invalidate_pattern", pattern)
        if self.primary is not None and not ok:
            raise CacheUnavailable(f"Redis 模式失效失败: {pattern}")
        return result if ok else removed


class CacheUnavailable(Exception):
    """主缓存失效操作未能执行"""


def build_cache(redis: Optional[Redis]) -> TieredCache:
    """根据可用的 Redis 客户端构建两级缓存"""
    from app.core.config import settings

    return TieredCache(
        RedisCache(redis) if redis is not None else None,
        MemoryCache(),
        failure_threshold=settings.CACHE_BREAKER_THRESHOLD,
        cooldown_seconds=settings.CACHE_BREAKER_COOLDOWN,
    )
