# Models
from .product import Product
from .stock_records import StockRecord
from .stock_movements import StockMovement, MovementType
from .low_stock_alerts import LowStockAlert, AlertSeverity
from .inventory_reservations import InventoryReservation, ReservationStatus
from .orders import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    DeliveryArea,
    InventoryState,
)

__all__ = [
    "Product",
    "StockRecord",
    "StockMovement",
    "MovementType",
    "LowStockAlert",
    "AlertSeverity",
    "InventoryReservation",
    "ReservationStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "DeliveryArea",
    "InventoryState",
]
