"""低库存告警服务"""

import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import AlertNotFound
from app.db.base import utcnow
from app.models.low_stock_alerts import LowStockAlert, AlertSeverity
from app.models.stock_records import StockRecord

logger = logging.getLogger(__name__)


def severity_for(current_stock: int, min_stock_level: int, reorder_point: int) -> Optional[AlertSeverity]:
    """按当前库存（而不是变动量）计算告警级别，None 表示无需告警

    只有库存不高于最低库存才告警；补货点只决定级别。
    """
    if current_stock > min_stock_level:
        return None
    if current_stock == 0:
        return AlertSeverity.OUT_OF_STOCK
    if current_stock <= reorder_point:
        return AlertSeverity.CRITICAL
    return AlertSeverity.LOW


class AlertService:
    """低库存告警

    stock_records.low_stock_flagged 是告警锁存：创建告警时置位，只有库存回到
    正常水平时才清除。人工处理（resolve）不清除锁存，因此同一低库存状态不会
    重复告警。
    """

    def __init__(self, db: Session):
        self.db = db

    def evaluate(self, product_id: int) -> Optional[LowStockAlert]:
        """库存变更后调用；失败只记录日志，不影响已提交的库存变更"""
        try:
            record = self._load(product_id)
            if record is None:
                self.db.rollback()
                return None
            severity = severity_for(record.current_stock, record.min_stock_level, record.reorder_point)
            if severity is None:
                if record.low_stock_flagged:
                    self._set_flag(product_id, False)
                    self.db.commit()
                    logger.info(f"库存恢复正常，解除告警锁存: product_id={product_id}")
                else:
                    self.db.rollback()
                return None
            return self.create_alert(record, severity)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"低库存评估失败: product_id={product_id}, error={str(e)}")
            return None

    def create_alert(
        self,
        record: StockRecord,
        severity: Optional[AlertSeverity] = None,
    ) -> Optional[LowStockAlert]:
        """为商品创建告警；已有未处理告警或锁存已置位时为空操作"""
        if severity is None:
            severity = severity_for(record.current_stock, record.min_stock_level, record.reorder_point)
            if severity is None:
                return None

        if record.low_stock_flagged or self._has_open_alert(record.product_id):
            self.db.rollback()
            return None

        alert = LowStockAlert(
            product_id=record.product_id,
            sku=record.sku,
            current_stock=record.current_stock,
            min_stock_level=record.min_stock_level,
            severity=severity,
            is_resolved=False,
        )
        try:
            self.db.add(alert)
            self._set_flag(record.product_id, True)
            self.db.commit()
        except IntegrityError:
            # 并发创建：唯一索引保证只保留一条
            self.db.rollback()
            logger.info(f"已存在未处理告警，跳过: product_id={record.product_id}")
            return None

        logger.warning(
            f"低库存告警: product_id={record.product_id}, sku={record.sku}, "
            f"current_stock={record.current_stock}, severity={severity.value}"
        )
        return alert

    def get_alerts(self, resolved: bool = False) -> List[LowStockAlert]:
        return self.db.execute(
            select(LowStockAlert)
            .where(LowStockAlert.is_resolved == resolved)
            .order_by(LowStockAlert.created_at.desc(), LowStockAlert.id.desc())
            .execution_options(populate_existing=True)
        ).scalars().all()

    def resolve_alert(self, alert_id: int, resolved_by: str) -> bool:
        """人工处理告警；重复处理返回 False"""
        result = self.db.execute(
            update(LowStockAlert)
            .where(LowStockAlert.id == alert_id, LowStockAlert.is_resolved.is_(False))
            .values(is_resolved=True, resolved_by=resolved_by, resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            exists = self.db.get(LowStockAlert, alert_id)
            if exists is None:
                raise AlertNotFound(f"告警 {alert_id} 不存在")
            return False
        self.db.commit()
        logger.info(f"低库存告警已处理: alert_id={alert_id}, resolved_by={resolved_by}")
        return True

    def scan_low_stock(self) -> int:
        """全量扫描库存记录，返回新建告警数量"""
        product_ids = self.db.execute(select(StockRecord.product_id)).scalars().all()
        self.db.rollback()
        created = 0
        for product_id in product_ids:
            if self.evaluate(product_id) is not None:
                created += 1
        logger.info(f"低库存扫描完成: 检查 {len(product_ids)} 个商品, 新建告警 {created} 条")
        return created

    def _load(self, product_id: int) -> Optional[StockRecord]:
        return self.db.execute(
            select(StockRecord)
            .where(StockRecord.product_id == product_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _has_open_alert(self, product_id: int) -> bool:
        return self.db.execute(
            select(LowStockAlert.id).where(
                LowStockAlert.product_id == product_id,
                LowStockAlert.is_resolved.is_(False),
            )
        ).first() is not None

    def _set_flag(self, product_id: int, flagged: bool):
        self.db.execute(
            update(StockRecord)
            .where(StockRecord.product_id == product_id)
            .values(low_stock_flagged=flagged)
            .execution_options(synchronize_session=False)
        )
