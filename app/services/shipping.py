"""运费计算"""

from decimal import Decimal

from app.core.config import settings
from app.models.orders import DeliveryArea


def shipping_fee_for(area: DeliveryArea) -> Decimal:
    if area == DeliveryArea.INSIDE_DHAKA:
        return settings.SHIPPING_FEE_INSIDE_DHAKA
    return settings.SHIPPING_FEE_OUTSIDE_DHAKA


def calculate_shipping(area: DeliveryArea, subtotal: Decimal) -> Decimal:
    """按配送区域收取固定运费，小计达到包邮门槛时免运费"""
    if subtotal >= settings.FREE_SHIPPING_THRESHOLD:
        return Decimal("0")
    return shipping_fee_for(DeliveryArea(area))
