"""库存服务实现"""

from sqlalchemy import select, update, func, case
from sqlalchemy.orm import Session
from typing import Dict, List, Optional, Tuple
from datetime import timedelta
import logging
from redlock import Redlock

from app.core.cache import CacheBackend
from app.core.config import settings
from app.core.exceptions import (
    DuplicateInventoryItem,
    InsufficientStock,
    LockConflict,
    PersistenceFailure,
    StockRecordNotFound,
    ValidationError,
)
from app.db.base import utcnow
from app.models.product import Product
from app.models.stock_records import StockRecord
from app.models.stock_movements import StockMovement, MovementType
from app.models.low_stock_alerts import LowStockAlert
from app.models.inventory_reservations import InventoryReservation, ReservationStatus
from app.models.orders import Order, OrderStatus, PaymentStatus, InventoryState
from app.services.alert_service import AlertService
from app.services.catalog_service import CACHE_PREFIX, CatalogCache, CatalogService
from app.services.saga import Saga
from app.services.stock_operator import StockOperator

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "lock:inventory:reservation-sweep"
SWEEP_LOCK_TTL = 60000  # 毫秒


# 预占流转只需要这几列，避免 rollback 后 ORM 实例过期重载
RESERVATION_COLUMNS = (
    InventoryReservation.id,
    InventoryReservation.order_id,
    InventoryReservation.product_id,
    InventoryReservation.quantity,
)

def reservation_expiry():
    return utcnow() + timedelta(minutes=settings.RESERVATION_TTL_MINUTES)

# 管理端可修改的非库存字段
EDITABLE_FIELDS = (
    "min_stock_level",
    "reorder_point",
    "max_stock_level",
    "cost_price",
    "selling_price",
    "supplier",
    "location",
)


class InventoryService:
    """库存核心服务类"""
    
    def __init__(self, db: Session, cache: CacheBackend = None, rlock: Redlock = None):
        self.db = db
        self.cache = cache
        self.rlock = rlock
        self.catalog = CatalogService(db, CatalogCache(cache) if cache is not None else None)
        self.alerts = AlertService(db)
        self.operator = StockOperator(db, catalog=self.catalog, alerts=self.alerts)

    # ==================== 查询 ====================

    def get_product_stock(self, product_id: int) -> int:
        """查询商品可用库存（带缓存）"""
        cache_key = f"{CACHE_PREFIX['STOCK_AVAILABLE']}{product_id}"
        
        # 先查缓存
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Cache hit for product {product_id}")
                return int(cached)
        
        # 缓存未命中，查询数据库
        available = self.operator.get_available(product_id)
        
        # 设置缓存（短 TTL，失效失败时的兜底）
        if self.cache is not None:
            self.cache.set(cache_key, available, settings.STOCK_CACHE_TTL)
            logger.debug(f"Cache set for product {product_id}: {available}")
        
        return available

    def batch_get_stocks(self, product_ids: List[int]) -> dict:
        """批量获取库存（带缓存优化）"""
        if not product_ids:
            return {}
            
        results = {}
        uncached_ids = []
        
        # 先查缓存
        for pid in product_ids:
            cached = self.cache.get(f"{CACHE_PREFIX['STOCK_AVAILABLE']}{pid}") if self.cache is not None else None
            if cached is not None:
                results[pid] = int(cached)
                logger.debug(f"Batch cache hit for product {pid}")
            else:
                uncached_ids.append(pid)
        
        # 查询未缓存的库存
        if uncached_ids:
            stocks = self.db.execute(
                select(StockRecord.product_id, StockRecord.available_stock)
                .where(StockRecord.product_id.in_(uncached_ids))
            ).all()
            stock_map = {product_id: available for product_id, available in stocks}
                
            for pid in uncached_ids:
                available = stock_map.get(pid, 0)
                results[pid] = available
                if self.cache is not None:
                    self.cache.set(f"{CACHE_PREFIX['STOCK_AVAILABLE']}{pid}", available, settings.STOCK_CACHE_TTL)
        
        return results

    def get_inventory_item(self, product_id: int) -> StockRecord:
        record = self.operator.get_record(product_id)
        if record is None:
            raise StockRecordNotFound(product_id)
        return record

    def list_inventory_items(self, page: int = 1, limit: int = 50) -> Tuple[List[StockRecord], int]:
        items = self.db.execute(
            select(StockRecord)
            .order_by(StockRecord.updated_at.desc(), StockRecord.product_id)
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars().all()
        total = self.db.execute(select(func.count()).select_from(StockRecord)).scalar_one()
        return items, total

    # ==================== 管理端维护 ====================

    def create_inventory_item(self, data) -> StockRecord:
        """为商品建立库存台账"""
        product = self.db.get(Product, data.product_id)
        if product is None:
            raise ValidationError(f"商品 {data.product_id} 不存在")
        if self.operator.get_record(data.product_id) is not None:
            raise DuplicateInventoryItem("该商品已存在库存记录")
        sku_taken = self.db.execute(
            select(StockRecord.product_id).where(StockRecord.sku == data.sku)
        ).first()
        if sku_taken is not None:
            raise DuplicateInventoryItem("SKU 已存在")

        record = StockRecord(
            product_id=data.product_id,
            sku=data.sku,
            current_stock=data.current_stock,
            reserved_stock=0,
            available_stock=data.current_stock,
            min_stock_level=data.min_stock_level,
            reorder_point=data.reorder_point,
            max_stock_level=data.max_stock_level,
            cost_price=data.cost_price,
            selling_price=data.selling_price,
            supplier=data.supplier,
            location=data.location,
            last_restocked=utcnow() if data.current_stock > 0 else None,
        )
        try:
            self.db.add(record)
            self.db.add(StockMovement(
                product_id=data.product_id,
                sku=data.sku,
                type=MovementType.IN,
                quantity=data.current_stock,
                previous_stock=0,
                new_stock=data.current_stock,
                previous_available=0,
                new_available=data.current_stock,
                reason="建立库存台账",
                actor="admin",
            ))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"创建库存记录失败: product_id={data.product_id}, error={str(e)}")
            raise

        logger.info(f"创建库存记录: product_id={data.product_id}, sku={data.sku}, stock={data.current_stock}")
        self.alerts.evaluate(data.product_id)
        self.catalog.invalidate_product_stock(data.product_id, product.slug)
        return self.get_inventory_item(data.product_id)

    def update_inventory_item(self, product_id: int, data) -> StockRecord:
        """修改阈值、价格等非库存字段；库存数量只能通过 adjust_stock 修改"""
        self.get_inventory_item(product_id)
        values = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if field in EDITABLE_FIELDS
        }
        if values:
            self.db.execute(
                update(StockRecord)
                .where(StockRecord.product_id == product_id)
                .values(**values, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            logger.info(f"更新库存记录: product_id={product_id}, fields={sorted(values)}")
            # 阈值变化可能进入或离开告警状态
            self.alerts.evaluate(product_id)
            self.catalog.invalidate_product_stock(product_id)
        return self.get_inventory_item(product_id)

    def adjust_stock(self, product_id: int, data, actor: str = "admin") -> StockRecord:
        """管理端入库 / 出库 / 盘点"""
        if data.type == MovementType.IN:
            self.operator.increment_stock(
                product_id,
                data.quantity,
                reference=data.reference,
                reason=data.reason,
                actor=actor,
                restock=True,
            )
        elif data.type == MovementType.OUT:
            if not self.operator.decrement_stock(
                product_id,
                data.quantity,
                reference=data.reference,
                reason=data.reason,
                actor=actor,
            ):
                raise self._insufficient(product_id, data.quantity)
        elif data.type == MovementType.ADJUSTMENT:
            if not self.operator.set_stock(
                product_id,
                data.quantity,
                reason=data.reason,
                reference=data.reference,
                actor=actor,
                notes=data.notes,
            ):
                record = self.get_inventory_item(product_id)
                raise ValidationError(
                    f"调整后的库存不能小于已预占数量 {record.reserved_stock}",
                    details={"reserved_stock": record.reserved_stock, "requested": data.quantity},
                )
        else:
            raise ValidationError(f"不支持的调整类型: {data.type}")
        return self.get_inventory_item(product_id)

    # ==================== 单商品预占 ====================

    def reserve_stock(self, product_id: int, quantity: int, order_id: str) -> bool:
        """预占单个商品库存并写入预占记录，不足时抛出 InsufficientStock"""
        existing = self.db.execute(
            select(InventoryReservation.id).where(
                InventoryReservation.order_id == order_id,
                InventoryReservation.product_id == product_id,
            )
        ).first()
        self.db.rollback()
        if existing is not None:
            raise ValidationError(f"订单 {order_id} 已预占过商品 {product_id}")

        if not self.operator.reserve_stock(product_id, quantity, reference=order_id):
            raise self._insufficient(product_id, quantity)

        try:
            self.db.add(InventoryReservation(
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                status=ReservationStatus.RESERVED,
                expired_at=reservation_expiry(),
            ))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"写入预占记录失败，回滚预占: order_id={order_id}, product_id={product_id}, error={str(e)}")
            if not self.operator.unreserve_stock(product_id, quantity, reference=order_id, reason="预占记录写入失败"):
                logger.critical(
                    f"回滚预占失败，需要人工对账: order_id={order_id}, product_id={product_id}, quantity={quantity}"
                )
            raise PersistenceFailure("预占记录保存失败") from e

        logger.info(f"预占库存成功: order_id={order_id}, product_id={product_id}, quantity={quantity}")
        return True

    # ==================== 订单预占流转 ====================

    def confirm_reservations(self, order_id: str) -> int:
        """支付确认：把订单的预占转为实际扣减，返回确认的条数"""
        return len(self.confirm_order_reservations(order_id))

    def confirm_order_reservations(self, order_id: str) -> List[int]:
        """把订单的预占转为实扣，返回完成扣减的商品ID"""
        committed = []
        for reservation in self._reservations(order_id, ReservationStatus.RESERVED):
            if not self._claim(reservation.id, ReservationStatus.RESERVED, ReservationStatus.CONFIRMED):
                continue
            if self.operator.commit_reserved_stock(
                reservation.product_id, reservation.quantity, reference=order_id
            ):
                committed.append(reservation.product_id)
            else:
                logger.critical(
                    f"预占转扣减失败，需要人工对账: order_id={order_id}, "
                    f"product_id={reservation.product_id}, quantity={reservation.quantity}"
                )
        logger.info(f"确认库存成功: order_id={order_id}, count={len(committed)}")
        return committed

    def release_reservations(self, order_id: str, operator: str = "order_service") -> int:
        """释放订单的全部预占，返回释放的条数"""
        released = 0
        for reservation in self._reservations(order_id, ReservationStatus.RESERVED):
            if self._release_one(reservation, actor=operator):
                released += 1
        logger.info(f"释放库存成功: order_id={order_id}, count={released}")
        return released

    def cleanup_expired_reservations(self, batch_size: int = 500) -> int:
        """清理过期的库存预占记录，并取消对应的待支付订单

        通过 Redlock 保证同一时刻只有一个清理进程。
        """
        lock = None
        if self.rlock:
            lock = self.rlock.lock(SWEEP_LOCK_KEY, SWEEP_LOCK_TTL)
            if not lock:
                raise LockConflict("已有清理任务在执行，请稍后重试")

        total_cleaned = 0
        last_id = 0
        try:
            while True:
                expired = self.db.execute(
                    select(*RESERVATION_COLUMNS)
                    .where(
                        InventoryReservation.id > last_id,
                        InventoryReservation.status == ReservationStatus.RESERVED,
                        InventoryReservation.expired_at <= utcnow(),
                    )
                    .order_by(InventoryReservation.id)
                    .limit(batch_size)
                ).all()
                self.db.rollback()

                if not expired:
                    break

                logger.info(f"本次清理 {len(expired)} 条过期预占记录")
                last_id = expired[-1].id
                by_order = {}
                for reservation in expired:
                    by_order.setdefault(reservation.order_id, []).append(reservation)
                for order_id, reservations in by_order.items():
                    total_cleaned += self._release_expired(order_id, reservations)

                if len(expired) < batch_size:
                    break
        finally:
            if self.rlock and lock:
                self.rlock.unlock(lock)

        logger.info(f"清理任务完成，总共清理 {total_cleaned} 条过期预占记录")
        return total_cleaned

    # ==================== 订单状态机调用的库存路径 ====================

    def process_order_stock_reduction(self, items: List[Dict], reference: Optional[str] = None) -> int:
        """已确认订单迁移库存状态：逐项把预占转为实扣

        任一项失败时按逆序补偿已完成的项（回补实物库存并重新预占）。
        """
        processed = 0
        with Saga(reference=reference or "stock-reduction") as saga:
            for item in items:
                product_id, quantity = int(item["product_id"]), int(item["quantity"])
                if not self.operator.commit_reserved_stock(product_id, quantity, reference=reference):
                    record = self.get_inventory_item(product_id)
                    raise ValidationError(
                        f"商品 {product_id} 预占不足: 已预占 {record.reserved_stock}，需要 {quantity}",
                        details={"product_id": product_id, "reserved_stock": record.reserved_stock,
                                 "requested": quantity},
                    )
                saga.add_compensation(
                    lambda p=product_id, q=quantity: self._undo_commit(p, q, reference),
                    "撤销预占转扣减",
                    product_id=product_id,
                    quantity=quantity,
                )
                processed += 1
            saga.complete()
        return processed

    def restore_order_stock(self, items: List[Dict], reference: Optional[str] = None,
                            reason: str = "订单取消回补库存") -> int:
        """取消/退款订单回补库存；单项失败记录 CRITICAL 并继续"""
        restored = 0
        for item in items:
            product_id, quantity = int(item["product_id"]), int(item["quantity"])
            try:
                ok = self.operator.increment_stock(product_id, quantity, reference=reference, reason=reason)
            except Exception as e:
                logger.critical(
                    f"回补库存失败，需要人工对账: reference={reference}, product_id={product_id}, "
                    f"quantity={quantity}, error={e!r}"
                )
                continue
            if ok:
                restored += 1
                logger.info(f"Restored {quantity} units of stock for product {product_id}")
        return restored

    # ==================== 报表 ====================

    def get_stock_movements(self, product_id: Optional[int] = None, page: int = 1,
                            limit: int = 50) -> Tuple[List[StockMovement], int]:
        stmt = select(StockMovement)
        count_stmt = select(func.count()).select_from(StockMovement)
        if product_id is not None:
            stmt = stmt.where(StockMovement.product_id == product_id)
            count_stmt = count_stmt.where(StockMovement.product_id == product_id)
        movements = self.db.execute(
            stmt.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        total = self.db.execute(count_stmt).scalar_one()
        return movements, total

    def get_low_stock_alerts(self, resolved: bool = False) -> List[LowStockAlert]:
        return self.alerts.get_alerts(resolved)

    def resolve_low_stock_alert(self, alert_id: int, resolved_by: str) -> bool:
        return self.alerts.resolve_alert(alert_id, resolved_by)

    def get_inventory_stats(self) -> dict:
        """库存统计：数量、总值、低库存/缺货、近期补货、热销商品、每日流水"""
        now = utcnow()
        restock_since = now - timedelta(days=settings.RESTOCK_WINDOW_DAYS)
        movers_since = now - timedelta(days=settings.TOP_MOVERS_WINDOW_DAYS)

        totals = self.db.execute(
            select(
                func.count(StockRecord.product_id),
                func.coalesce(func.sum(StockRecord.current_stock * StockRecord.cost_price), 0),
                func.coalesce(func.sum(case((StockRecord.current_stock <= StockRecord.min_stock_level, 1), else_=0)), 0),
                func.coalesce(func.sum(case((StockRecord.current_stock == 0, 1), else_=0)), 0),
                func.coalesce(func.sum(case((StockRecord.last_restocked >= restock_since, 1), else_=0)), 0),
            )
        ).one()

        sold = func.sum(StockMovement.quantity).label("quantity_sold")
        top_rows = self.db.execute(
            select(
                StockMovement.product_id,
                StockRecord.sku,
                Product.title,
                StockRecord.selling_price,
                sold,
            )
            .join(StockRecord, StockRecord.product_id == StockMovement.product_id)
            .join(Product, Product.id == StockMovement.product_id)
            .where(
                StockMovement.type == MovementType.OUT,
                StockMovement.created_at >= movers_since,
            )
            .group_by(StockMovement.product_id, StockRecord.sku, Product.title, StockRecord.selling_price)
            .order_by(sold.desc(), StockMovement.product_id)
            .limit(settings.TOP_MOVERS_LIMIT)
        ).all()

        day = func.date(StockMovement.created_at).label("day")
        daily_rows = self.db.execute(
            select(day, func.count(StockMovement.id), func.sum(func.abs(StockMovement.quantity)))
            .where(StockMovement.created_at >= movers_since)
            .group_by(day)
            .order_by(day)
        ).all()
        self.db.rollback()

        return {
            "total_products": int(totals[0]),
            "total_value": totals[1],
            "low_stock_items": int(totals[2]),
            "out_of_stock_items": int(totals[3]),
            "recently_restocked": int(totals[4]),
            "top_selling_products": [
                {
                    "product_id": product_id,
                    "sku": sku,
                    "name": title,
                    "quantity_sold": int(quantity),
                    "revenue": selling_price * int(quantity),
                }
                for product_id, sku, title, selling_price, quantity in top_rows
            ],
            "stock_movements": [
                {"date": str(d), "movements": int(count), "units": int(units or 0)}
                for d, count, units in daily_rows
            ],
        }

    # ==================== 内部实现 ====================

    def _insufficient(self, product_id: int, requested: int) -> InsufficientStock:
        record = self.get_inventory_item(product_id)
        snapshot = self.catalog.get_product_by_id(product_id)
        title = snapshot.title if snapshot else (record.sku or f"商品 {product_id}")
        return InsufficientStock(product_id, title, record.available_stock, requested)

    def _reservations(self, order_id: str, status: ReservationStatus) -> list:
        reservations = self.db.execute(
            select(*RESERVATION_COLUMNS)
            .where(
                InventoryReservation.order_id == order_id,
                InventoryReservation.status == status,
            )
            .order_by(InventoryReservation.id)
        ).all()
        self.db.rollback()
        return reservations

    def _claim(self, reservation_id: int, from_status: ReservationStatus,
               to_status: ReservationStatus) -> bool:
        """条件更新预占状态，保证每条预占只被处理一次"""
        result = self.db.execute(
            update(InventoryReservation)
            .where(
                InventoryReservation.id == reservation_id,
                InventoryReservation.status == from_status,
            )
            .values(status=to_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            return False
        self.db.commit()
        return True

    def _release_one(self, reservation, actor: str) -> bool:
        if not self._claim(reservation.id, ReservationStatus.RESERVED, ReservationStatus.RELEASED):
            return False
        try:
            ok = self.operator.unreserve_stock(
                reservation.product_id,
                reservation.quantity,
                reference=reservation.order_id,
                actor=actor,
            )
        except Exception as e:
            logger.critical(
                f"释放预占失败，需要人工对账: order_id={reservation.order_id}, "
                f"product_id={reservation.product_id}, quantity={reservation.quantity}, error={e!r}"
            )
            return False
        if not ok:
            logger.critical(
                f"释放预占失败，需要人工对账: order_id={reservation.order_id}, "
                f"product_id={reservation.product_id}, quantity={reservation.quantity}"
            )
        return ok

    def _undo_commit(self, product_id: int, quantity: int, reference: Optional[str]) -> bool:
        if not self.operator.increment_stock(product_id, quantity, reference=reference, reason="撤销出库"):
            return False
        return self.operator.reserve_stock(product_id, quantity, reference=reference, reason="恢复预占")

    def _release_expired(self, order_id: str, reservations: list) -> int:
        """释放一个订单的过期预占

        先把订单从 pending/reserved 条件更新为已取消，抢占成功才释放预占；
        抢占失败说明支付确认已接手这些预占，留给确认流程处理。
        """
        if self._expire_order(order_id):
            reservations = self._reservations(order_id, ReservationStatus.RESERVED)
        else:
            state = self.db.execute(
                select(Order.inventory_state).where(Order.order_number == order_id)
            ).scalar_one_or_none()
            self.db.rollback()
            # 没有对应订单的直接预占，或订单已释放后残留的预占，可以直接释放
            if state is not None and state != InventoryState.RELEASED:
                logger.warning(f"预占已过期但订单库存状态为 {state.value}，跳过释放: order_id={order_id}")
                return 0

        released = 0
        for reservation in reservations:
            if self._release_one(reservation, actor="system_cleanup"):
                released += 1
        return released

    def _expire_order(self, order_number: str) -> bool:
        """预占过期：待支付订单视为支付失败并取消，返回是否抢占成功"""
        result = self.db.execute(
            update(Order)
            .where(
                Order.order_number == order_number,
                Order.status == OrderStatus.PENDING,
                Order.inventory_state == InventoryState.RESERVED,
            )
            .values(
                status=OrderStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                inventory_state=InventoryState.RELEASED,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            return False
        self.db.commit()
        logger.info(f"预占过期，订单已取消: order_number={order_number}")
        return True
