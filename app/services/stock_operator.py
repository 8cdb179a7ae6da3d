"""原子库存操作

每个操作都是针对单条 stock_records 记录的一次条件更新：
UPDATE stock_records SET ... WHERE product_id = :id AND <充足性条件>
与对应的库存流水写入在同一个数据库事务中提交。rowcount 为 0 表示条件不满足。
这是系统中唯一的原子性边界，跨商品的一致性由上层 Saga 补偿保证。
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.exceptions import StockRecordNotFound, ValidationError
from app.db.base import utcnow
from app.models.stock_records import StockRecord
from app.models.stock_movements import StockMovement, MovementType

logger = logging.getLogger(__name__)

# 盘点调整在并发修改下的最大重试次数
MAX_ADJUST_RETRIES = 5


class StockOperator:
    """单商品原子库存操作（库存字段的唯一写入口）"""

    def __init__(self, db: Session, catalog=None, alerts=None):
        self.db = db
        self.catalog = catalog
        self.alerts = alerts

    # ==================== 原子操作 ====================

    def decrement_stock(
        self,
        product_id: int,
        quantity: int,
        reference: Optional[str] = None,
        reason: str = "订单出库",
        actor: str = "order_service",
    ) -> bool:
        """扣减实物库存，仅当可用库存 >= quantity 时成功

        要求可用库存而不是实物库存充足，保证 reserved_stock <= current_stock。
        """
        self._check_quantity(quantity)
        return self._apply(
            product_id,
            MovementType.OUT,
            quantity,
            condition=StockRecord.available_stock >= quantity,
            values={
                "current_stock": StockRecord.current_stock - quantity,
                "available_stock": StockRecord.available_stock - quantity,
                "last_sold": utcnow(),
            },
            current_delta=-quantity,
            available_delta=-quantity,
            reason=reason,
            reference=reference,
            actor=actor,
        )

    def increment_stock(
        self,
        product_id: int,
        quantity: int,
        reference: Optional[str] = None,
        reason: str = "库存回补",
        actor: str = "system",
        restock: bool = False,
    ) -> bool:
        """无条件增加实物库存（补货或补偿回滚）"""
        self._check_quantity(quantity)
        values = {
            "current_stock": StockRecord.current_stock + quantity,
            "available_stock": StockRecord.available_stock + quantity,
        }
        if restock:
            values["last_restocked"] = utcnow()
        return self._apply(
            product_id,
            MovementType.IN,
            quantity,
            condition=None,
            values=values,
            current_delta=quantity,
            available_delta=quantity,
            reason=reason,
            reference=reference,
            actor=actor,
        )

    def reserve_stock(
        self,
        product_id: int,
        quantity: int,
        reference: Optional[str] = None,
        reason: str = "订单预占库存",
        actor: str = "order_service",
    ) -> bool:
        """预占库存，仅当可用库存 >= quantity 时成功"""
        self._check_quantity(quantity)
        return self._apply(
            product_id,
            MovementType.RESERVED,
            quantity,
            condition=StockRecord.available_stock >= quantity,
            values={
                "reserved_stock": StockRecord.reserved_stock + quantity,
                "available_stock": StockRecord.available_stock - quantity,
            },
            current_delta=0,
            available_delta=-quantity,
            reason=reason,
            reference=reference,
            actor=actor,
        )

    def unreserve_stock(
        self,
        product_id: int,
        quantity: int,
        reference: Optional[str] = None,
        reason: str = "释放预占库存",
        actor: str = "order_service",
    ) -> bool:
        """释放预占，仅当预占库存 >= quantity 时成功"""
        self._check_quantity(quantity)
        return self._apply(
            product_id,
            MovementType.UNRESERVED,
            quantity,
            condition=StockRecord.reserved_stock >= quantity,
            values={
                "reserved_stock": StockRecord.reserved_stock - quantity,
                "available_stock": StockRecord.available_stock + quantity,
            },
            current_delta=0,
            available_delta=quantity,
            reason=reason,
            reference=reference,
            actor=actor,
        )

    def commit_reserved_stock(
        self,
        product_id: int,
        quantity: int,
        reference: Optional[str] = None,
        reason: str = "支付确认出库",
        actor: str = "order_service",
    ) -> bool:
        """把预占转为实际扣减：实物库存和预占库存同时减少，可用库存不变"""
        self._check_quantity(quantity)
        return self._apply(
            product_id,
            MovementType.OUT,
            quantity,
            condition=StockRecord.reserved_stock >= quantity,
            values={
                "current_stock": StockRecord.current_stock - quantity,
                "reserved_stock": StockRecord.reserved_stock - quantity,
                "last_sold": utcnow(),
            },
            current_delta=-quantity,
            available_delta=0,
            reason=reason,
            reference=reference,
            actor=actor,
        )

    def set_stock(
        self,
        product_id: int,
        new_stock: int,
        reason: str,
        reference: Optional[str] = None,
        actor: str = "admin",
        notes: Optional[str] = None,
    ) -> bool:
        """盘点调整：把实物库存设为 new_stock

        以读到的旧值作为比较条件（CAS），并发修改时重试。新值小于预占库存时失败。
        """
        if not isinstance(new_stock, int) or isinstance(new_stock, bool) or new_stock < 0:
            raise ValidationError("调整后的库存必须是非负整数")

        for _ in range(MAX_ADJUST_RETRIES):
            record = self._load(product_id)
            if record is None:
                self.db.rollback()
                raise StockRecordNotFound(product_id)
            previous = record.current_stock
            reserved = record.reserved_stock
            self.db.rollback()

            if new_stock < reserved:
                logger.warning(
                    f"盘点调整被拒绝: product_id={product_id}, new_stock={new_stock}, reserved={reserved}"
                )
                return False

            applied = self._apply(
                product_id,
                MovementType.ADJUSTMENT,
                new_stock - previous,
                condition=(StockRecord.current_stock == previous)
                & (StockRecord.reserved_stock <= new_stock),
                values={
                    "current_stock": new_stock,
                    "available_stock": new_stock - StockRecord.reserved_stock,
                },
                current_delta=new_stock - previous,
                available_delta=None,
                reason=reason,
                reference=reference,
                actor=actor,
                notes=notes,
            )
            if applied:
                return True
            logger.info(f"盘点调整遇到并发修改，重试: product_id={product_id}")

        logger.warning(f"盘点调整重试耗尽: product_id={product_id}")
        return False

    # ==================== 查询 ====================

    def get_record(self, product_id: int) -> Optional[StockRecord]:
        return self._load(product_id)

    def get_available(self, product_id: int) -> int:
        record = self._load(product_id)
        return record.available_stock if record else 0

    # ==================== 内部实现 ====================

    @staticmethod
    def _check_quantity(quantity):
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"数量必须是正整数: {quantity!r}")

    def _load(self, product_id: int) -> Optional[StockRecord]:
        return self.db.execute(
            select(StockRecord)
            .where(StockRecord.product_id == product_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _apply(
        self,
        product_id: int,
        movement_type: MovementType,
        quantity: int,
        condition,
        values: dict,
        current_delta: int,
        available_delta: Optional[int],
        reason: str,
        reference: Optional[str],
        actor: str,
        notes: Optional[str] = None,
    ) -> bool:
        """执行一次条件更新并写入流水；条件不满足返回 False"""
        stmt = update(StockRecord).where(StockRecord.product_id == product_id)
        if condition is not None:
            stmt = stmt.where(condition)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            result = self.db.execute(stmt)
            if result.rowcount == 0:
                self.db.rollback()
                if self._load(product_id) is None:
                    self.db.rollback()
                    raise StockRecordNotFound(product_id)
                self.db.rollback()
                logger.info(
                    f"库存条件不满足: product_id={product_id}, type={movement_type.value}, "
                    f"quantity={quantity}, reference={reference}"
                )
                return False

            # 同一事务内读取更新后的值（行锁仍由本事务持有）
            record = self._load(product_id)
            previous_available = (
                record.available_stock - available_delta
                if available_delta is not None
                else (record.current_stock - current_delta) - record.reserved_stock
            )
            movement = StockMovement(
                product_id=product_id,
                sku=record.sku,
                type=movement_type,
                quantity=quantity,
                previous_stock=record.current_stock - current_delta,
                new_stock=record.current_stock,
                previous_available=previous_available,
                new_available=record.available_stock,
                reason=reason,
                reference=reference,
                actor=actor,
                notes=notes,
            )
            self.db.add(movement)
            self.db.commit()
        except StockRecordNotFound:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"库存操作失败: product_id={product_id}, type={movement_type.value}, "
                f"quantity={quantity}, error={str(e)}"
            )
            raise

        logger.info(
            f"库存变动: product_id={product_id}, type={movement_type.value}, quantity={quantity}, "
            f"stock {movement.previous_stock}->{movement.new_stock}, "
            f"available {movement.previous_available}->{movement.new_available}, reference={reference}"
        )
        self._after_mutation(record, movement_type)
        return True

    def _after_mutation(self, record: StockRecord, movement_type: MovementType):
        """变更后的副作用：低库存告警与缓存失效，二者都不影响已提交的库存"""
        if self.alerts is not None and movement_type in (
            MovementType.OUT,
            MovementType.ADJUSTMENT,
            MovementType.IN,
        ):
            self.alerts.evaluate(record.product_id)
        if self.catalog is not None:
            self.catalog.invalidate_product_stock(record.product_id)
