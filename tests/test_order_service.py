"""订单服务（下单 Saga 与状态流转）单元测试"""
import re
import threading
from decimal import Decimal

import pytest
from unittest.mock import patch
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    CheckoutTimeout,
    InsufficientStock,
    InvalidStatusTransition,
    OrderNotFound,
    PersistenceFailure,
    ProductUnavailable,
    ValidationError,
)
from app.models.inventory_reservations import InventoryReservation, ReservationStatus
from app.models.orders import (
    DeliveryArea,
    InventoryState,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from app.models.stock_movements import StockMovement, MovementType
from app.models.stock_records import StockRecord
from app.schemas.order import CartItem, CreateOrderRequest, GuestOrderRequest, ShippingAddress
from app.services.inventory_service import InventoryService
from app.services.order_service import OrderRepository, OrderService, generate_order_number


ADDRESS = ShippingAddress(
    first_name="Rahim",
    last_name="Uddin",
    email="rahim@example.com",
    phone="01712345678",
    address="House 12, Road 5",
    city="Dhaka",
    area="Gulshan",
    postal_code="1212",
)


def order_request(payment_method=PaymentMethod.COD, delivery_area=DeliveryArea.INSIDE_DHAKA):
    return CreateOrderRequest(
        shipping_address=ADDRESS,
        delivery_area=delivery_area,
        payment_method=payment_method,
    )


def guest_request(lines, payment_method=PaymentMethod.COD, delivery_area=DeliveryArea.INSIDE_DHAKA):
    return GuestOrderRequest(
        shipping_address=ADDRESS,
        delivery_area=delivery_area,
        payment_method=payment_method,
        items=[CartItem(product_id=pid, quantity=qty) for pid, qty in lines],
    )


def stock_of(db, product_id):
    db.rollback()
    record = db.get(StockRecord, product_id, populate_existing=True)
    return record.current_stock, record.reserved_stock, record.available_stock


def order_count(db):
    return db.execute(select(func.count()).select_from(Order)).scalar_one()


def movement_types(db, product_id):
    return [
        m.type
        for m in db.execute(
            select(StockMovement)
            .where(StockMovement.product_id == product_id)
            .order_by(StockMovement.id)
        ).scalars()
    ]


class FailingRepository(OrderRepository):
    """订单写入总是失败"""

    def insert_order(self, order, reservations=()):
        raise OperationalError("INSERT INTO orders", {}, Exception("disk full"))


@pytest.fixture
def service(db_session, cart_store):
    return OrderService(db_session, InventoryService(db_session), cart_store)


class TestCheckout:
    """下单 Saga 测试类"""

    def test_generate_order_number_format(self):
        assert re.match(r"^SC-\d{9}$", generate_order_number())

    def test_guest_order_success(self, db_session, service, make_product):
        """测试即时支付下单：扣减库存、生成订单快照"""
        product = make_product(db_session, title="棉质T恤", price="100.00", stock=10)

        order = service.create_order_from_guest_cart(guest_request([(product.id, 2)]))

        assert re.match(r"^SC-\d{9}$", order.order_number)
        assert order.status == OrderStatus.PENDING
        assert order.inventory_state == InventoryState.DEDUCTED
        assert order.subtotal == Decimal("200.00")
        assert order.shipping == Decimal("60.00")
        assert order.total == Decimal("260.00")
        assert order.currency == "BDT"
        assert [(i.title, i.quantity, i.track_inventory) for i in order.items] == [("棉质T恤", 2, True)]
        assert stock_of(db_session, product.id) == (8, 0, 8)

        movement = db_session.execute(
            select(StockMovement).where(StockMovement.product_id == product.id)
        ).scalar_one()
        assert movement.type == MovementType.OUT
        assert movement.reference == order.order_number

    def test_shipping_outside_dhaka_and_free_threshold(self, db_session, service, make_product):
        cheap = make_product(db_session, price="200.00", stock=10)
        expensive = make_product(db_session, price="1500.00", stock=10)

        order = service.create_order_from_guest_cart(
            guest_request([(cheap.id, 1)], delivery_area=DeliveryArea.OUTSIDE_DHAKA)
        )
        assert order.shipping == Decimal("120.00")

        order = service.create_order_from_guest_cart(
            guest_request([(expensive.id, 1)], delivery_area=DeliveryArea.OUTSIDE_DHAKA)
        )
        assert order.shipping == Decimal("0.00")
        assert order.total == Decimal("1500.00")

    def test_rollback_completeness(self, db_session, service, make_product):
        """测试 [A:2, B:3, C:1] 在 C 失败时 A、B 完全回滚"""
        a = make_product(db_session, stock=10)
        b = make_product(db_session, stock=10)
        c = make_product(db_session, title="缺货商品", stock=0)

        with pytest.raises(InsufficientStock) as exc_info:
            service.create_order_from_guest_cart(guest_request([(a.id, 2), (b.id, 3), (c.id, 1)]))

        assert exc_info.value.product_id == c.id
        assert exc_info.value.available == 0
        assert stock_of(db_session, a.id) == (10, 0, 10)
        assert stock_of(db_session, b.id) == (10, 0, 10)
        assert stock_of(db_session, c.id) == (0, 0, 0)
        assert movement_types(db_session, a.id) == [MovementType.OUT, MovementType.IN]
        assert movement_types(db_session, b.id) == [MovementType.OUT, MovementType.IN]
        assert movement_types(db_session, c.id) == []
        assert order_count(db_session) == 0

    def test_insufficient_second_line(self, db_session, service, make_product):
        """测试 A 库存 10 买 2、B 库存 5 买 999：A 回到 10，不生成订单"""
        a = make_product(db_session, stock=10)
        b = make_product(db_session, title="帆布鞋", stock=5)

        with pytest.raises(InsufficientStock) as exc_info:
            service.create_order_from_guest_cart(guest_request([(a.id, 2), (b.id, 999)]))

        error = exc_info.value
        assert (error.product_id, error.available, error.requested) == (b.id, 5, 999)
        assert error.message == "帆布鞋 仅剩 5 件，您请求了 999 件"
        assert stock_of(db_session, a.id) == (10, 0, 10)
        assert stock_of(db_session, b.id) == (5, 0, 5)
        assert movement_types(db_session, a.id) == [MovementType.OUT, MovementType.IN]
        assert order_count(db_session) == 0

    def test_persistence_failure_compensates(self, db_session, cart_store, make_product):
        """测试订单写入失败时回滚全部库存并抛出 PersistenceFailure"""
        a = make_product(db_session, stock=10)
        b = make_product(db_session, stock=4)
        service = OrderService(
            db_session,
            InventoryService(db_session),
            cart_store,
            repository=FailingRepository(db_session),
        )

        with pytest.raises(PersistenceFailure):
            service.create_order_from_guest_cart(guest_request([(a.id, 3), (b.id, 4)]))

        assert stock_of(db_session, a.id) == (10, 0, 10)
        assert stock_of(db_session, b.id) == (4, 0, 4)
        assert order_count(db_session) == 0

    def test_persistence_failure_releases_reservations(self, db_session, cart_store, make_product):
        a = make_product(db_session, stock=10)
        service = OrderService(
            db_session,
            InventoryService(db_session),
            cart_store,
            repository=FailingRepository(db_session),
        )

        with pytest.raises(PersistenceFailure):
            service.create_order_from_guest_cart(
                guest_request([(a.id, 3)], payment_method=PaymentMethod.CARD)
            )

        assert stock_of(db_session, a.id) == (10, 0, 10)
        assert movement_types(db_session, a.id) == [MovementType.RESERVED, MovementType.UNRESERVED]

    def test_checkout_timeout_compensates(self, db_session, service, make_product):
        """测试步骤之间超时：已完成的步骤被补偿"""
        a = make_product(db_session, stock=10)
        b = make_product(db_session, stock=10)
        clock = {"now": 0.0}
        original = service.operator.decrement_stock

        def slow_decrement(*args, **kwargs):
            result = original(*args, **kwargs)
            clock["now"] += 60
            return result

        with patch.object(service.operator, "decrement_stock", side_effect=slow_decrement), \
             patch("app.services.saga.time.monotonic", side_effect=lambda: clock["now"]):
            with pytest.raises(CheckoutTimeout):
                service.create_order_from_guest_cart(guest_request([(a.id, 2), (b.id, 2)]))

        assert stock_of(db_session, a.id) == (10, 0, 10)
        assert stock_of(db_session, b.id) == (10, 0, 10)
        assert movement_types(db_session, b.id) == []
        assert order_count(db_session) == 0

    def test_product_unavailable(self, db_session, service, make_product):
        """测试下架商品在任何库存操作之前被拒绝"""
        active = make_product(db_session, stock=10)
        inactive = make_product(db_session, stock=10, is_active=False)

        with pytest.raises(ProductUnavailable) as exc_info:
            service.create_order_from_guest_cart(guest_request([(active.id, 1), (inactive.id, 1), (9999, 1)]))

        assert exc_info.value.product_ids == [inactive.id, 9999]
        assert movement_types(db_session, active.id) == []

    def test_untracked_lines_skip_inventory(self, db_session, service, make_product):
        """测试不跟踪库存的商品不占用库存"""
        tracked = make_product(db_session, stock=5)
        digital = make_product(db_session, track_inventory=False, stock=0)
        no_record = make_product(db_session, with_record=False)

        order = service.create_order_from_guest_cart(
            guest_request([(tracked.id, 1), (digital.id, 3), (no_record.id, 2)])
        )

        assert [i.track_inventory for i in order.items] == [True, False, False]
        assert stock_of(db_session, tracked.id) == (4, 0, 4)
        assert stock_of(db_session, digital.id) == (0, 0, 0)

    def test_duplicate_lines_merged(self, db_session, service, make_product):
        a = make_product(db_session, stock=10)
        b = make_product(db_session, stock=10)

        order = service.create_order_from_guest_cart(guest_request([(a.id, 1), (b.id, 1), (a.id, 2)]))

        assert [(i.product_id, i.quantity, i.line_no) for i in order.items] == [(a.id, 3, 1), (b.id, 1, 2)]
        assert stock_of(db_session, a.id) == (7, 0, 7)

    def test_order_from_cart_clears_cart(self, db_session, service, cart_store, make_product):
        """测试登录用户下单成功后清空购物车"""
        a = make_product(db_session, stock=10)
        cart_store.carts["u-1"] = [{"product_id": a.id, "quantity": 2}]

        order = service.create_order_from_cart("u-1", order_request())

        assert order.user_id == "u-1"
        assert cart_store.get_cart("u-1") == {"items": []}
        assert cart_store.save_calls == [("u-1", [])]

    def test_empty_cart(self, service):
        with pytest.raises(ValidationError):
            service.create_order_from_cart("u-empty", order_request())

    def test_invalid_cart_line(self, service, cart_store):
        cart_store.carts["u-2"] = [{"product_id": 1, "quantity": 0}]

        with pytest.raises(ValidationError):
            service.create_order_from_cart("u-2", order_request())

    def test_cart_clear_failure_keeps_order(self, db_session, service, cart_store, make_product):
        """测试清空购物车失败只记录日志，订单保留"""
        a = make_product(db_session, stock=10)
        cart_store.carts["u-3"] = [{"product_id": a.id, "quantity": 1}]

        with patch.object(cart_store, "save_cart", side_effect=RedisConnectionError("redis down")):
            order = service.create_order_from_cart("u-3", order_request())

        assert order_count(db_session) == 1
        assert stock_of(db_session, a.id) == (9, 0, 9)
        assert order.order_number

    def test_concurrent_orders_do_not_oversell(self, concurrent_session_factory, make_product):
        """测试库存 5、两个并发订单各买 3 件：只有一个成功"""
        setup = concurrent_session_factory()
        product_id = make_product(setup, stock=5).id
        setup.close()

        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(2)

        def place():
            db = concurrent_session_factory()
            try:
                service = OrderService(db, InventoryService(db))
                barrier.wait()
                try:
                    service.create_order_from_guest_cart(guest_request([(product_id, 3)]))
                    outcome = "ok"
                except InsufficientStock:
                    outcome = "insufficient"
                with lock:
                    outcomes.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=place) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        check = concurrent_session_factory()
        assert stock_of(check, product_id) == (2, 0, 2)
        assert order_count(check) == 1
        check.close()


class TestReservationMode:
    """跳转支付（预占模式）测试类"""

    def place(self, db_session, service, make_product, stock=10, quantity=3):
        product = make_product(db_session, stock=stock)
        order = service.create_order_from_guest_cart(
            guest_request([(product.id, quantity)], payment_method=PaymentMethod.SSLCOMMERZ)
        )
        return product, order

    def reservations(self, db_session, order_number):
        return db_session.execute(
            select(InventoryReservation)
            .where(InventoryReservation.order_id == order_number)
            .execution_options(populate_existing=True)
        ).scalars().all()

    def test_redirect_payment_reserves(self, db_session, service, make_product):
        product, order = self.place(db_session, service, make_product)

        assert order.inventory_state == InventoryState.RESERVED
        assert stock_of(db_session, product.id) == (10, 3, 7)
        reservations = self.reservations(db_session, order.order_number)
        assert [(r.product_id, r.quantity, r.status) for r in reservations] == [
            (product.id, 3, ReservationStatus.RESERVED)
        ]
        assert reservations[0].expired_at is not None

    def test_confirm_payment_commits_reservation(self, db_session, service, make_product):
        """测试支付成功：预占转为实扣"""
        product, order = self.place(db_session, service, make_product)

        confirmed = service.confirm_payment(order.order_number, "TXN-001")

        assert confirmed.status == OrderStatus.CONFIRMED
        assert confirmed.payment_status == PaymentStatus.COMPLETED
        assert confirmed.transaction_id == "TXN-001"
        assert confirmed.inventory_state == InventoryState.DEDUCTED
        assert stock_of(db_session, product.id) == (7, 0, 7)
        assert self.reservations(db_session, order.order_number)[0].status == ReservationStatus.CONFIRMED

        # 重复回调是空操作
        service.confirm_payment(order.order_number, "TXN-001")
        assert stock_of(db_session, product.id) == (7, 0, 7)

    def test_confirm_payment_without_reservation_decrements(self, db_session, service, make_product):
        """测试支付确认时预占已被释放：改为直接扣减，订单不会漏扣库存"""
        product, order = self.place(db_session, service, make_product)
        service.inventory.release_reservations(order.order_number)
        assert stock_of(db_session, product.id) == (10, 0, 10)

        confirmed = service.confirm_payment(order.order_number, "TXN-002")

        assert confirmed.inventory_state == InventoryState.DEDUCTED
        assert stock_of(db_session, product.id) == (7, 0, 7)
        assert movement_types(db_session, product.id) == [
            MovementType.RESERVED, MovementType.UNRESERVED, MovementType.OUT
        ]

    def test_fail_payment_releases_reservation(self, db_session, service, make_product):
        """测试支付失败：释放预占，订单取消"""
        product, order = self.place(db_session, service, make_product)

        failed = service.fail_payment(order.order_number, "用户取消支付")

        assert failed.status == OrderStatus.CANCELLED
        assert failed.payment_status == PaymentStatus.FAILED
        assert failed.inventory_state == InventoryState.RELEASED
        assert stock_of(db_session, product.id) == (10, 0, 10)
        assert self.reservations(db_session, order.order_number)[0].status == ReservationStatus.RELEASED

        service.fail_payment(order.order_number)
        assert stock_of(db_session, product.id) == (10, 0, 10)

    def test_cancel_reserved_order(self, db_session, service, make_product):
        product, order = self.place(db_session, service, make_product)

        service.update_order_status(order.order_number, OrderStatus.CANCELLED)

        assert stock_of(db_session, product.id) == (10, 0, 10)

    def test_manual_advance_commits_reservation(self, db_session, service, make_product):
        product, order = self.place(db_session, service, make_product)

        updated = service.update_order_status(order.order_number, OrderStatus.PROCESSING)

        assert updated.inventory_state == InventoryState.DEDUCTED
        assert stock_of(db_session, product.id) == (7, 0, 7)


class TestOrderStatus:
    """订单状态流转测试类"""

    def test_cancel_restores_exactly_once(self, db_session, service, make_product):
        """测试取消订单只回补一次库存"""
        product = make_product(db_session, stock=10)
        order = service.create_order_from_guest_cart(guest_request([(product.id, 2)]))
        assert stock_of(db_session, product.id) == (8, 0, 8)

        cancelled = service.update_order_status(order.order_number, OrderStatus.CANCELLED)
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.inventory_state == InventoryState.RESTORED
        assert stock_of(db_session, product.id) == (10, 0, 10)

        service.update_order_status(order.order_number, OrderStatus.CANCELLED)
        assert stock_of(db_session, product.id) == (10, 0, 10)
        assert movement_types(db_session, product.id) == [MovementType.OUT, MovementType.IN]

    def test_refund_after_delivery(self, db_session, service, make_product):
        product = make_product(db_session, stock=10)
        order = service.create_order_from_guest_cart(guest_request([(product.id, 4)]))

        for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.DELIVERED):
            service.update_order_status(order.order_number, status)
        assert stock_of(db_session, product.id) == (6, 0, 6)

        refunded = service.update_order_status(order.order_number, OrderStatus.REFUNDED)

        assert refunded.status == OrderStatus.REFUNDED
        assert refunded.payment_status == PaymentStatus.REFUNDED
        assert stock_of(db_session, product.id) == (10, 0, 10)

    def test_invalid_transition(self, db_session, service, make_product):
        product = make_product(db_session, stock=10)
        order = service.create_order_from_guest_cart(guest_request([(product.id, 1)]))
        service.update_order_status(order.order_number, OrderStatus.CANCELLED)

        with pytest.raises(InvalidStatusTransition):
            service.update_order_status(order.order_number, OrderStatus.PROCESSING)

        with pytest.raises(InvalidStatusTransition):
            service.confirm_payment(order.order_number, "TXN-LATE")

    def test_order_not_found(self, service):
        with pytest.raises(OrderNotFound):
            service.get_order("SC-000000000")

    def test_list_orders(self, db_session, service, cart_store, make_product):
        product = make_product(db_session, stock=10)
        cart_store.carts["u-9"] = [{"product_id": product.id, "quantity": 1}]
        mine = service.create_order_from_cart("u-9", order_request())
        service.create_order_from_guest_cart(guest_request([(product.id, 1)]))
        service.update_order_status(mine.order_number, OrderStatus.CANCELLED)

        orders, total = service.list_orders(page=1, limit=10)
        assert total == 2
        cancelled, total = service.list_orders(status=OrderStatus.CANCELLED)
        assert total == 1
        assert cancelled[0].order_number == mine.order_number
        assert [o.order_number for o in service.list_orders_by_user("u-9")] == [mine.order_number]
