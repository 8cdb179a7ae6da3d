"""业务异常定义

所有业务异常继承自 AppError，由 app.main 中的异常处理器统一转换为
{"success": False, "message": ..., "code": ..., "details": ...} 响应。
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    """业务异常基类"""

    status_code: int = 400
    code: str = "BAD_REQUEST"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(AppError):
    """请求参数不合法，在任何库存操作之前拒绝"""

    status_code = 400
    code = "VALIDATION_ERROR"


class ProductUnavailable(AppError):
    """购物车引用的商品不存在或已下架"""

    status_code = 400
    code = "PRODUCT_UNAVAILABLE"

    def __init__(self, product_ids, message: str = "购物车中部分商品已下架或不存在"):
        super().__init__(message, details={"product_ids": list(product_ids)})
        self.product_ids = list(product_ids)


class InsufficientStock(AppError):
    """某个商品库存不足（已执行补偿后抛出）"""

    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, title: str, available: int, requested: int):
        message = f"{title} 仅剩 {available} 件，您请求了 {requested} 件"
        super().__init__(
            message,
            details={
                "product_id": product_id,
                "title": title,
                "available": available,
                "requested": requested,
            },
        )
        self.product_id = product_id
        self.title = title
        self.available = available
        self.requested = requested


class PersistenceFailure(AppError):
    """库存已扣减但订单写入失败（已执行补偿后抛出）"""

    status_code = 500
    code = "PERSISTENCE_FAILURE"


class CheckoutTimeout(AppError):
    """下单流程超时（已执行补偿后抛出）"""

    status_code = 504
    code = "CHECKOUT_TIMEOUT"


class StockRecordNotFound(AppError):
    status_code = 404
    code = "INVENTORY_NOT_FOUND"

    def __init__(self, product_id: int):
        super().__init__(f"商品 {product_id} 没有库存记录", details={"product_id": product_id})
        self.product_id = product_id


class DuplicateInventoryItem(AppError):
    status_code = 400
    code = "INVENTORY_EXISTS"


class OrderNotFound(AppError):
    status_code = 404
    code = "ORDER_NOT_FOUND"


class AlertNotFound(AppError):
    status_code = 404
    code = "ALERT_NOT_FOUND"


class InvalidStatusTransition(AppError):
    status_code = 400
    code = "INVALID_STATUS_TRANSITION"


class LockConflict(AppError):
    """分布式锁获取失败"""

    status_code = 429
    code = "LOCK_CONFLICT"


class CacheInvalidationFailure(AppError):
    """缓存失效失败：只记录日志，不向上传播"""

    status_code = 500
    code = "CACHE_INVALIDATION_FAILURE"
