import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    Boolean,
    String,
    Text,
    Numeric,
    TIMESTAMP,
    func,
    Enum,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import relationship
from app.db.base import Base, BigIntPK, JSONType, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    COD = "cod"
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    CARD = "card"
    SSLCOMMERZ = "sslcommerz"


# 跳转类网关：支付结果异步回调，下单时只预占库存
REDIRECT_PAYMENT_METHODS = frozenset({PaymentMethod.CARD, PaymentMethod.SSLCOMMERZ})


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DeliveryArea(str, enum.Enum):
    INSIDE_DHAKA = "inside_dhaka"
    OUTSIDE_DHAKA = "outside_dhaka"


class InventoryState(str, enum.Enum):
    DEDUCTED = "deducted"    # 已实扣
    RESERVED = "reserved"    # 仅预占，等待支付确认
    RESTORED = "restored"    # 取消后已回补
    RELEASED = "released"    # 预占已释放


def _enum(enum_cls, name):
    return Enum(
        enum_cls,
        name=name,
        create_type=True,
        values_callable=lambda e: [m.value for m in e],
    )


class Order(Base):
    """订单记录：创建后只有状态流转会修改它"""

    __tablename__ = "orders"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    order_number = Column(
        String(32),
        nullable=False,
        unique=True,
        comment="全局唯一订单号",
    )

    user_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="下单用户，游客下单为空",
    )

    status = Column(
        _enum(OrderStatus, "order_status_type"),
        nullable=False,
        default=OrderStatus.PENDING,
    )

    payment_method = Column(_enum(PaymentMethod, "payment_method_type"), nullable=False)
    payment_status = Column(
        _enum(PaymentStatus, "payment_status_type"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    transaction_id = Column(String(128), nullable=True)

    inventory_state = Column(
        _enum(InventoryState, "order_inventory_state_type"),
        nullable=False,
        comment="订单占用库存的方式",
    )

    delivery_area = Column(_enum(DeliveryArea, "delivery_area_type"), nullable=False)

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="BDT")

    shipping_address = Column(JSONType, nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.line_no",
        lazy="selectin",
    )


class OrderItem(Base):
    """订单行快照，与之后的目录变化无关"""

    __tablename__ = "order_items"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    order_id = Column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    line_no = Column(Integer, nullable=False, comment="购物车顺序")

    product_id = Column(BigInteger, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False)
    sku = Column(String(64), nullable=False, default="")
    brand = Column(String(128), nullable=False, default="")
    image = Column(String(512), nullable=False, default="")
    price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    track_inventory = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="下单时是否占用了库存",
    )

    order = relationship("Order", back_populates="items")


Index(
    "idx_orders_status_created",
    Order.status,
    Order.created_at.desc(),
)
