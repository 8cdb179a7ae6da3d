import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    Integer,
    String,
    Text,
    TIMESTAMP,
    func,
    false,
    Enum,
    Index,
)
from app.db.base import Base, BigIntPK, utcnow


class AlertSeverity(str, enum.Enum):
    LOW = "low"                    # <= min_stock_level
    CRITICAL = "critical"          # <= reorder_point
    OUT_OF_STOCK = "out_of_stock"  # == 0


class LowStockAlert(Base):
    __tablename__ = "low_stock_alerts"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        BigInteger,
        nullable=False,
        index=True,
        comment="商品ID",
    )

    sku = Column(String(64), nullable=True)

    current_stock = Column(
        Integer,
        nullable=False,
        comment="检测时的实物库存",
    )

    min_stock_level = Column(Integer, nullable=False)

    severity = Column(
        Enum(
            AlertSeverity,
            name="low_stock_severity",
            create_type=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )

    is_resolved = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(TIMESTAMP(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )


# 同一商品最多一条未处理告警
Index(
    "uq_low_stock_alerts_open_product",
    LowStockAlert.product_id,
    unique=True,
    postgresql_where=LowStockAlert.is_resolved == false(),
    sqlite_where=LowStockAlert.is_resolved == false(),
)
