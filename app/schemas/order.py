# app/schemas/order.py
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from decimal import Decimal
from datetime import datetime

from app.models.orders import (
    DeliveryArea,
    InventoryState,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from app.schemas.base import BaseResponse, BaseSchema

# 孟加拉手机号
PHONE_PATTERN = r"^(\+8801|01)[3-9]\d{8}$"


class CartItem(BaseModel):
    """购物车行"""
    product_id: int = Field(..., gt=0, description="商品ID", examples=[1])
    quantity: int = Field(..., gt=0, le=1000, description="购买数量", examples=[2])


class ShippingAddress(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=64)
    last_name: str = ""
    email: str = ""
    phone: str = Field(..., pattern=PHONE_PATTERN, examples=["01712345678"])
    address: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=64)
    area: str = Field(..., min_length=1, max_length=64)
    postal_code: str = Field("", max_length=16)


# 创建订单请求（登录用户，商品来自购物车）
class CreateOrderRequest(BaseModel):
    shipping_address: ShippingAddress
    delivery_area: DeliveryArea = Field(..., description="配送区域，决定运费")
    payment_method: PaymentMethod = Field(..., description="支付方式")
    notes: Optional[str] = Field(None, max_length=500)


# 游客下单：购物车由请求直接携带
class GuestOrderRequest(CreateOrderRequest):
    items: List[CartItem] = Field(..., min_length=1, max_length=100)


class OrderItemSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    title: str
    slug: str
    sku: str
    brand: str
    image: str
    price: Decimal
    quantity: int


class OrderSchema(BaseSchema):
    id: int
    order_number: str
    user_id: Optional[str]
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    transaction_id: Optional[str] = None
    inventory_state: InventoryState
    delivery_area: DeliveryArea
    subtotal: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    shipping_address: dict
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemSchema] = []


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class ConfirmPaymentRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=128)


class FailPaymentRequest(BaseModel):
    reason: str = Field("支付失败", max_length=255)


# 订单响应
class OrderResponse(BaseResponse):
    data: OrderSchema


class OrderListResponse(BaseResponse):
    data: List[OrderSchema]
    total: int
