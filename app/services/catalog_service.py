"""商品目录读取与缓存失效桥接"""

import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.cache import CacheBackend
from app.core.config import settings
from app.core.exceptions import CacheInvalidationFailure
from app.models.product import Product
from app.models.stock_records import StockRecord
from app.schemas.catalog import ProductSnapshot

logger = logging.getLogger(__name__)

CACHE_PREFIX = {
    "PRODUCT_BY_ID": "product:id:",
    "PRODUCT_BY_SLUG": "product:slug:",
    "STOCK_AVAILABLE": "stock:available:",
    "PRODUCTS_BY_CATEGORY": "products:category:",
    "PRODUCTS_BY_SECTION": "products:section:",
    "RELATED_PRODUCTS": "products:related:",
    "SEARCH_RESULTS": "search:results:",
    "CATEGORIES": "categories:list",
}

# 可能内嵌库存信息的列表/聚合缓存
LIST_CACHE_PATTERNS = (
    CACHE_PREFIX["PRODUCTS_BY_CATEGORY"] + "*",
    CACHE_PREFIX["PRODUCTS_BY_SECTION"] + "*",
    CACHE_PREFIX["RELATED_PRODUCTS"] + "*",
    CACHE_PREFIX["SEARCH_RESULTS"] + "*",
)


class CatalogCache:
    """商品相关缓存的读写与失效"""

    def __init__(self, cache: CacheBackend):
        self.cache = cache

    def get_product(self, product_id: int) -> Optional[dict]:
        try:
            return self.cache.get(f"{CACHE_PREFIX['PRODUCT_BY_ID']}{product_id}")
        except Exception as e:
            logger.error(f"商品缓存读取失败: product_id={product_id}, error={str(e)}")
            return None

    def set_product(self, snapshot: ProductSnapshot):
        payload = snapshot.model_dump(mode="json")
        try:
            self.cache.set(
                f"{CACHE_PREFIX['PRODUCT_BY_ID']}{snapshot.id}",
                payload,
                settings.PRODUCT_CACHE_TTL,
            )
            self.cache.set(
                f"{CACHE_PREFIX['PRODUCT_BY_SLUG']}{snapshot.slug}",
                payload,
                settings.PRODUCT_CACHE_TTL,
            )
        except Exception as e:
            logger.error(f"商品缓存写入失败: product_id={snapshot.id}, error={str(e)}")

    def invalidate_product(self, product_id: int, slug: Optional[str] = None) -> bool:
        """失效商品详情（按 id 和 slug）及所有可能内嵌库存的列表缓存

        失败只记录日志并返回 False，绝不影响已提交的库存变更。
        """
        keys = [
            f"{CACHE_PREFIX['PRODUCT_BY_ID']}{product_id}",
            f"{CACHE_PREFIX['STOCK_AVAILABLE']}{product_id}",
        ]
        if slug:
            keys.append(f"{CACHE_PREFIX['PRODUCT_BY_SLUG']}{slug}")
        try:
            self.cache.delete(*keys)
            self.invalidate_list_caches()
        except Exception as e:
            failure = CacheInvalidationFailure(
                f"缓存失效失败: product_id={product_id}, slug={slug}",
                details={"keys": keys, "error": str(e)},
            )
            logger.error(f"{failure.message}, error={str(e)}")
            return False
        logger.debug(f"Cache invalidated for product {product_id}")
        return True

    def invalidate_list_caches(self):
        for pattern in LIST_CACHE_PATTERNS:
            self.cache.invalidate_pattern(pattern)
        self.cache.delete(CACHE_PREFIX["CATEGORIES"])


class CatalogService:
    """目录读取（cache-aside）"""

    def __init__(self, db: Session, cache: Optional[CatalogCache] = None):
        self.db = db
        self.cache = cache

    def get_product_by_id(self, product_id: int) -> Optional[ProductSnapshot]:
        if self.cache is not None:
            cached = self.cache.get_product(product_id)
            if cached is not None:
                logger.debug(f"Cache hit for product {product_id}")
                return ProductSnapshot.model_validate(cached)

        row = self.db.execute(
            select(Product, StockRecord)
            .outerjoin(StockRecord, StockRecord.product_id == Product.id)
            .where(Product.id == product_id)
        ).first()
        if row is None:
            return None

        snapshot = self._to_snapshot(*row)
        if self.cache is not None:
            self.cache.set_product(snapshot)
        return snapshot

    def get_products_by_ids(self, product_ids: Iterable[int]) -> Dict[int, ProductSnapshot]:
        results = {}
        for product_id in product_ids:
            snapshot = self.get_product_by_id(product_id)
            if snapshot is not None:
                results[product_id] = snapshot
        return results

    def invalidate_product_stock(self, product_id: int, slug: Optional[str] = None) -> bool:
        """库存变更后的缓存失效入口（Cache Invalidation Bridge）"""
        if self.cache is None:
            return True
        if slug is None:
            try:
                slug = self.db.execute(
                    select(Product.slug).where(Product.id == product_id)
                ).scalar_one_or_none()
            except Exception as e:
                logger.error(f"查询商品 slug 失败，仅按 id 失效: product_id={product_id}, error={str(e)}")
                self.db.rollback()
        return self.cache.invalidate_product(product_id, slug)

    @staticmethod
    def _to_snapshot(product: Product, stock: Optional[StockRecord]) -> ProductSnapshot:
        return ProductSnapshot(
            id=product.id,
            title=product.title,
            slug=product.slug,
            price=product.price,
            images=list(product.images or []),
            sku=product.sku,
            brand=product.brand,
            category=product.category,
            stock=stock.available_stock if stock is not None else None,
            track_inventory=bool(product.track_inventory),
            is_active=bool(product.is_active),
        )
