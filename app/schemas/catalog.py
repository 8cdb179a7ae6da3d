"""商品目录快照（下单时读取）"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ProductSnapshot(BaseModel):
    """目录服务返回的商品信息；stock 为空表示不跟踪库存"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    slug: str
    price: Decimal
    images: List[str] = []
    sku: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    stock: Optional[int] = None
    track_inventory: bool = True
    is_active: bool = True
