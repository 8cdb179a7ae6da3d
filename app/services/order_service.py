"""订单服务：下单 Saga 与订单状态流转

下单流程按购物车顺序逐项占用库存，每成功一项就登记补偿动作；任一项库存不足、
订单保存失败或处理超时都会先逆序执行补偿，再把第一个不可恢复的原因抛给调用方。
"""

import logging
import random
import time
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InsufficientStock,
    InvalidStatusTransition,
    OrderNotFound,
    PersistenceFailure,
    ProductUnavailable,
    ValidationError,
)
from app.db.base import utcnow
from app.models.inventory_reservations import InventoryReservation, ReservationStatus
from app.models.orders import (
    REDIRECT_PAYMENT_METHODS,
    InventoryState,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
)
from app.schemas.catalog import ProductSnapshot
from app.schemas.order import CartItem, CreateOrderRequest, GuestOrderRequest
from app.services.inventory_service import InventoryService, reservation_expiry
from app.services.saga import Saga
from app.services.shipping import calculate_shipping

logger = logging.getLogger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 5

# 允许的状态流转
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

# 进入这些状态时需要归还订单占用的库存
RESTORING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


def generate_order_number() -> str:
    """SC-<时间戳后6位><3位随机数>"""
    timestamp = str(int(time.time() * 1000))[-6:]
    suffix = f"{random.randint(0, 999):03d}"
    return f"{settings.ORDER_NUMBER_PREFIX}-{timestamp}{suffix}"


class OrderRepository:
    """订单持久化"""

    def __init__(self, db: Session):
        self.db = db

    def order_number_exists(self, order_number: str) -> bool:
        exists = self.db.execute(
            select(Order.id).where(Order.order_number == order_number)
        ).first() is not None
        self.db.rollback()
        return exists

    def insert_order(self, order: Order, reservations: List[InventoryReservation] = ()) -> Order:
        """订单、订单行与预占记录在同一事务中写入"""
        try:
            self.db.add(order)
            self.db.add_all(list(reservations))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return order

    def get_by_number(self, order_number: str) -> Optional[Order]:
        return self.db.execute(
            select(Order)
            .where(Order.order_number == order_number)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()


class OrderService:
    """下单与订单状态流转"""

    def __init__(self, db: Session, inventory: InventoryService, cart_store=None,
                 repository: OrderRepository = None):
        self.db = db
        self.inventory = inventory
        self.operator = inventory.operator
        self.catalog = inventory.catalog
        self.cart_store = cart_store
        self.repository = repository or OrderRepository(db)

    # ==================== 下单 ====================

    def create_order_from_cart(self, user_id: str, request: CreateOrderRequest) -> Order:
        """登录用户下单：商品来自 Redis 购物车，成功后清空购物车"""
        cart = self.cart_store.get_cart(user_id)
        items = cart.get("items") or []
        if not items:
            raise ValidationError("购物车为空")

        order = self._place_order(items, request, user_id=user_id)

        # 订单已保存，清空购物车失败不影响订单
        try:
            self.cart_store.save_cart(user_id, [])
        except RedisError as e:
            logger.error(f"清空购物车失败: user_id={user_id}, order_number={order.order_number}, error={str(e)}")
        return order

    def create_order_from_guest_cart(self, request: GuestOrderRequest) -> Order:
        """游客下单：购物车由请求携带"""
        items = [item.model_dump() for item in request.items]
        return self._place_order(items, request, user_id=None)

    def _place_order(self, items: List[dict], request: CreateOrderRequest,
                     user_id: Optional[str]) -> Order:
        lines = self._merge_lines(items)

        snapshots = self.catalog.get_products_by_ids(lines.keys())
        unavailable = [
            product_id
            for product_id in lines
            if product_id not in snapshots or not snapshots[product_id].is_active
        ]
        if unavailable:
            raise ProductUnavailable(unavailable)

        reservation_mode = request.payment_method in REDIRECT_PAYMENT_METHODS
        order_number = self._new_order_number()
        tracked = [pid for pid in lines if self._is_tracked(snapshots[pid])]

        logger.info(
            f"开始下单: order_number={order_number}, user_id={user_id}, lines={len(lines)}, "
            f"tracked={len(tracked)}, mode={'reserve' if reservation_mode else 'decrement'}"
        )

        with Saga(order_number, timeout=settings.CHECKOUT_TIMEOUT_SECONDS) as saga:
            for product_id in tracked:
                quantity = lines[product_id]
                saga.check_deadline()
                if reservation_mode:
                    self._reserve_line(saga, snapshots[product_id], quantity, order_number)
                else:
                    self._decrement_line(saga, snapshots[product_id], quantity, order_number)
            saga.check_deadline()

            order = self._build_order(order_number, user_id, request, lines, snapshots, tracked,
                                      reservation_mode)
            reservations = []
            if reservation_mode:
                expired_at = reservation_expiry()
                reservations = [
                    InventoryReservation(
                        order_id=order_number,
                        product_id=product_id,
                        quantity=lines[product_id],
                        status=ReservationStatus.RESERVED,
                        expired_at=expired_at,
                    )
                    for product_id in tracked
                ]

            try:
                self.repository.insert_order(order, reservations)
            except Exception as e:
                logger.error(f"订单保存失败: order_number={order_number}, error={str(e)}")
                raise PersistenceFailure(
                    "订单保存失败，库存已回滚，请稍后重试",
                    details={"order_number": order_number},
                ) from e
            saga.complete()

        logger.info(f"下单成功: order_number={order_number}, total={order.total}")
        return order

    def _reserve_line(self, saga: Saga, snapshot: ProductSnapshot, quantity: int, order_number: str):
        product_id = snapshot.id
        if not self.operator.reserve_stock(product_id, quantity, reference=order_number):
            raise self._insufficient(snapshot, quantity)
        saga.add_compensation(
            lambda: self.operator.unreserve_stock(
                product_id, quantity, reference=order_number, reason="下单失败释放预占"
            ),
            "释放预占",
            product_id=product_id,
            quantity=quantity,
        )

    def _decrement_line(self, saga: Saga, snapshot: ProductSnapshot, quantity: int, order_number: str):
        product_id = snapshot.id
        if not self.operator.decrement_stock(product_id, quantity, reference=order_number):
            raise self._insufficient(snapshot, quantity)
        saga.add_compensation(
            lambda: self.operator.increment_stock(
                product_id, quantity, reference=order_number, reason="下单失败回补库存"
            ),
            "回补库存",
            product_id=product_id,
            quantity=quantity,
        )

    # ==================== 支付回调 ====================

    def confirm_payment(self, order_number: str, transaction_id: str) -> Order:
        """支付成功：预占转为实扣，订单进入 confirmed"""
        order = self.get_order(order_number)
        if order.payment_status == PaymentStatus.COMPLETED:
            return order
        if order.status != OrderStatus.PENDING:
            raise InvalidStatusTransition(f"订单状态为 {order.status.value}，无法确认支付")

        previous_state = order.inventory_state
        claimed = self._transition(
            order,
            OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            transaction_id=transaction_id,
            inventory_state=InventoryState.DEDUCTED,
        )
        if not claimed:
            raise InvalidStatusTransition("订单状态已被修改，请刷新后重试")

        if previous_state == InventoryState.RESERVED:
            self._commit_reserved(order)

        logger.info(f"支付确认: order_number={order_number}, transaction_id={transaction_id}")
        return self.get_order(order_number)

    def fail_payment(self, order_number: str, reason: str = "支付失败") -> Order:
        """支付失败或用户取消支付：归还库存，订单取消"""
        order = self.get_order(order_number)
        if order.status == OrderStatus.CANCELLED and order.payment_status == PaymentStatus.FAILED:
            return order
        if order.status != OrderStatus.PENDING:
            raise InvalidStatusTransition(f"订单状态为 {order.status.value}，无法标记支付失败")

        self._cancel(order, OrderStatus.CANCELLED, payment_status=PaymentStatus.FAILED)
        logger.info(f"支付失败，订单已取消: order_number={order_number}, reason={reason}")
        return self.get_order(order_number)

    # ==================== 状态流转 ====================

    def update_order_status(self, order_number: str, status: OrderStatus) -> Order:
        """按状态表流转；进入取消/退款时恰好归还一次库存"""
        order = self.get_order(order_number)
        status = OrderStatus(status)
        if order.status == status:
            return order
        if status not in ORDER_TRANSITIONS[order.status]:
            raise InvalidStatusTransition(
                f"订单状态不能从 {order.status.value} 变为 {status.value}",
                details={"from": order.status.value, "to": status.value},
            )

        previous_status = order.status
        if status in RESTORING_STATUSES:
            payment_status = PaymentStatus.REFUNDED if status == OrderStatus.REFUNDED else None
            self._cancel(order, status, payment_status=payment_status)
        elif order.inventory_state == InventoryState.RESERVED:
            # 预占订单被人工推进：先把预占转为实扣
            if not self._transition(order, status, inventory_state=InventoryState.DEDUCTED):
                raise InvalidStatusTransition("订单状态已被修改，请刷新后重试")
            self._commit_reserved(order)
        else:
            if not self._transition(order, status):
                raise InvalidStatusTransition("订单状态已被修改，请刷新后重试")

        logger.info(f"订单状态更新: order_number={order_number}, {previous_status.value} -> {status.value}")
        return self.get_order(order_number)

    def _cancel(self, order: Order, status: OrderStatus, payment_status: Optional[PaymentStatus] = None):
        """先条件更新抢占库存归还权，再执行归还，保证只归还一次"""
        previous_state = order.inventory_state
        if previous_state == InventoryState.DEDUCTED:
            next_state = InventoryState.RESTORED
        elif previous_state == InventoryState.RESERVED:
            next_state = InventoryState.RELEASED
        else:
            next_state = previous_state

        values = {"inventory_state": next_state}
        if payment_status is not None:
            values["payment_status"] = payment_status
        if not self._transition(order, status, **values):
            raise InvalidStatusTransition("订单状态已被修改，请刷新后重试")

        if previous_state == InventoryState.DEDUCTED:
            self.inventory.restore_order_stock(
                self._tracked_items(order),
                reference=order.order_number,
                reason=f"订单{status.value}回补库存",
            )
        elif previous_state == InventoryState.RESERVED:
            self.inventory.release_reservations(order.order_number)

    def _commit_reserved(self, order: Order):
        """订单已抢占为 deducted 后把预占转为实扣

        预占已不在（被释放或缺失）的商品改为直接扣减可用库存，
        保证进入 deducted 的订单每一项都实际出库。
        """
        order_number = order.order_number
        committed = set(self.inventory.confirm_order_reservations(order_number))
        for item in self._tracked_items(order):
            if item["product_id"] in committed:
                continue
            logger.warning(
                f"预占已失效，改为直接扣减: order_number={order_number}, "
                f"product_id={item['product_id']}, quantity={item['quantity']}"
            )
            if not self.operator.decrement_stock(
                item["product_id"], item["quantity"], reference=order_number, reason="预占失效直接出库"
            ):
                logger.critical(
                    f"支付确认时库存不足，需要人工处理: order_number={order_number}, "
                    f"product_id={item['product_id']}, quantity={item['quantity']}"
                )

    def _transition(self, order: Order, status: OrderStatus, **values) -> bool:
        """以读到的状态和库存状态为条件更新订单"""
        result = self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == order.status,
                Order.inventory_state == order.inventory_state,
            )
            .values(status=status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            return False
        self.db.commit()
        return True

    # ==================== 查询 ====================

    def get_order(self, order_number: str) -> Order:
        order = self.repository.get_by_number(order_number)
        if order is None:
            raise OrderNotFound(f"订单不存在: {order_number}")
        return order

    def list_orders_by_user(self, user_id: str) -> List[Order]:
        return self.db.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        ).scalars().all()

    def list_orders(self, page: int = 1, limit: int = 20,
                    status: Optional[OrderStatus] = None) -> Tuple[List[Order], int]:
        stmt = select(Order)
        count_stmt = select(func.count()).select_from(Order)
        if status is not None:
            stmt = stmt.where(Order.status == status)
            count_stmt = count_stmt.where(Order.status == status)
        orders = self.db.execute(
            stmt.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        total = self.db.execute(count_stmt).scalar_one()
        return orders, total

    # ==================== 内部实现 ====================

    @staticmethod
    def _merge_lines(items: List[dict]) -> "OrderedDict[int, int]":
        """校验购物车行并按首次出现的顺序合并重复商品"""
        if not items:
            raise ValidationError("购物车为空")
        lines = OrderedDict()
        for raw in items:
            try:
                item = CartItem.model_validate(raw)
            except PydanticValidationError as e:
                raise ValidationError(
                    "购物车商品数据无效",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e
            lines[item.product_id] = lines.get(item.product_id, 0) + item.quantity
        return lines

    @staticmethod
    def _is_tracked(snapshot: ProductSnapshot) -> bool:
        return snapshot.track_inventory and snapshot.stock is not None

    def _insufficient(self, snapshot: ProductSnapshot, requested: int) -> InsufficientStock:
        available = self.operator.get_available(snapshot.id)
        self.db.rollback()
        return InsufficientStock(snapshot.id, snapshot.title, available, requested)

    def _new_order_number(self) -> str:
        for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
            order_number = generate_order_number()
            if not self.repository.order_number_exists(order_number):
                return order_number
            logger.warning(f"订单号冲突，重新生成: {order_number}")
        raise PersistenceFailure("无法生成唯一订单号，请稍后重试")

    @staticmethod
    def _build_order(order_number: str, user_id: Optional[str], request: CreateOrderRequest,
                     lines: Dict[int, int], snapshots: Dict[int, ProductSnapshot],
                     tracked: List[int], reservation_mode: bool) -> Order:
        items = []
        subtotal = Decimal("0")
        for line_no, (product_id, quantity) in enumerate(lines.items(), start=1):
            snapshot = snapshots[product_id]
            subtotal += snapshot.price * quantity
            items.append(OrderItem(
                line_no=line_no,
                product_id=product_id,
                title=snapshot.title,
                slug=snapshot.slug,
                sku=snapshot.sku or "",
                brand=snapshot.brand or "",
                image=snapshot.images[0] if snapshot.images else "",
                price=snapshot.price,
                quantity=quantity,
                track_inventory=product_id in tracked,
            ))

        subtotal = subtotal.quantize(Decimal("0.01"))
        shipping = calculate_shipping(request.delivery_area, subtotal).quantize(Decimal("0.01"))
        discount = Decimal("0.00")
        return Order(
            order_number=order_number,
            user_id=user_id,
            status=OrderStatus.PENDING,
            payment_method=request.payment_method,
            payment_status=PaymentStatus.PENDING,
            inventory_state=InventoryState.RESERVED if reservation_mode else InventoryState.DEDUCTED,
            delivery_area=request.delivery_area,
            subtotal=subtotal,
            shipping=shipping,
            discount=discount,
            total=subtotal + shipping - discount,
            currency=settings.CURRENCY,
            shipping_address=request.shipping_address.model_dump(),
            notes=request.notes,
            items=items,
        )

    @staticmethod
    def _tracked_items(order: Order) -> List[dict]:
        return [
            {"product_id": item.product_id, "quantity": item.quantity}
            for item in order.items
            if item.track_inventory
        ]
