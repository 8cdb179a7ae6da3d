from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    String,
    Boolean,
    Numeric,
    ForeignKey,
    CheckConstraint,
    TIMESTAMP,
    func,
)
from app.db.base import Base, utcnow


class StockRecord(Base):
    """商品库存台账（每个商品一条）

    current_stock / reserved_stock / available_stock 只能通过
    app.services.stock_operator.StockOperator 的条件更新修改。
    """

    __tablename__ = "stock_records"

    product_id = Column(
        BigInteger,
        ForeignKey("products.id", ondelete="CASCADE"),
        primary_key=True,
        comment="商品ID",
    )

    sku = Column(
        String(64),
        nullable=True,
        unique=True,
        comment="SKU",
    )

    current_stock = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="实物库存",
    )

    reserved_stock = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="已预占库存",
    )

    available_stock = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="可售库存 = 实物库存 - 预占库存",
    )

    min_stock_level = Column(Integer, nullable=False, default=0, server_default="0")
    reorder_point = Column(Integer, nullable=False, default=0, server_default="0")
    max_stock_level = Column(Integer, nullable=False, default=0, server_default="0")

    cost_price = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    selling_price = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")

    supplier = Column(String(128), nullable=True)
    location = Column(String(128), nullable=True)

    low_stock_flagged = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
        comment="低库存告警锁存：已告警且尚未恢复",
    )

    last_restocked = Column(TIMESTAMP(timezone=True), nullable=True)
    last_sold = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "current_stock >= 0",
            name="ck_current_stock_non_negative",
        ),
        CheckConstraint(
            "reserved_stock >= 0",
            name="ck_reserved_stock_non_negative",
        ),
        CheckConstraint(
            "reserved_stock <= current_stock",
            name="ck_reserved_within_current",
        ),
        CheckConstraint(
            "available_stock = current_stock - reserved_stock",
            name="ck_available_stock_derived",
        ),
    )
