import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    Text,
    func,
    Enum,
    Index,
)
from app.db.base import Base, BigIntPK, utcnow

# 1定义库存变动类型（数据库 ENUM）
class MovementType(str, enum.Enum):
    IN = "in"                   # 入库 / 补偿回补
    OUT = "out"                 # 出库扣减
    ADJUSTMENT = "adjustment"   # 人工盘点调整
    RESERVED = "reserved"       # 预占
    UNRESERVED = "unreserved"   # 释放预占
# 2️库存流水表（只追加，不修改）
class StockMovement(Base):
    __tablename__ = "stock_movements"

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

    type = Column(
        Enum(
            MovementType,
            name="stock_movement_type",  # 重要！PostgreSQL ENUM 类型名
            create_type=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        comment="变动类型",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="变动数量（adjustment 为带符号差值）",
    )

    previous_stock = Column(
        Integer,
        nullable=False,
        comment="变动前实物库存",
    )

    new_stock = Column(
        Integer,
        nullable=False,
        comment="变动后实物库存",
    )

    previous_available = Column(
        Integer,
        nullable=False,
        comment="变动前可用库存",
    )

    new_available = Column(
        Integer,
        nullable=False,
        comment="变动后可用库存",
    )

    reason = Column(
        String(255),
        nullable=False,
        comment="变动原因",
    )

    reference = Column(
        String(64),
        nullable=True,
        index=True,
        comment="订单号或外部单据号",
    )

    actor = Column(
        String(64),
        nullable=True,
        comment="操作人/服务名",
    )

    notes = Column(Text, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

# 3️组合索引（高频查询优化）


Index(
    "idx_stock_movements_product_created_desc",
    StockMovement.product_id,
    StockMovement.created_at.desc(),
)

Index(
    "idx_stock_movements_type_created",
    StockMovement.type,
    StockMovement.created_at,
)
