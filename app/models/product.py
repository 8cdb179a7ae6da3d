from sqlalchemy import (
    Column,
    String,
    Boolean,
    Numeric,
    TIMESTAMP,
    func,
    Index,
)
from app.db.base import Base, BigIntPK, JSONType, utcnow


class Product(Base):
    """商品目录（库存引擎只读，用于生成订单快照）"""

    __tablename__ = "products"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    sku = Column(
        String(64),
        nullable=True,
        unique=True,
        comment="商品唯一SKU",
    )

    title = Column(
        String(255),
        nullable=False,
        comment="商品名称",
    )

    slug = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="URL 别名，用于按 slug 缓存",
    )

    price = Column(
        Numeric(12, 2),
        nullable=False,
        comment="售价",
    )

    images = Column(
        JSONType,
        nullable=False,
        default=list,
        comment="图片地址列表",
    )

    brand = Column(String(128), nullable=True)

    category = Column(
        String(128),
        nullable=True,
        comment="分类 slug",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        server_default="1",
        comment="是否上架",
    )

    track_inventory = Column(
        Boolean,
        nullable=False,
        default=True,
        server_default="1",
        comment="是否参与库存扣减",
    )

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
        nullable=False,
        onupdate=utcnow,
    )


Index(
    "idx_products_category_active",
    Product.category,
    Product.is_active,
)
