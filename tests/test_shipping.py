"""运费与购物车存储单元测试"""
import json
from decimal import Decimal

import pytest

from app.models.orders import DeliveryArea
from app.services.cart_service import RedisCartStore
from app.services.shipping import calculate_shipping


@pytest.mark.parametrize(
    "area, subtotal, expected",
    [
        (DeliveryArea.INSIDE_DHAKA, Decimal("200"), Decimal("60")),
        (DeliveryArea.OUTSIDE_DHAKA, Decimal("200"), Decimal("120")),
        ("outside_dhaka", Decimal("1499.99"), Decimal("120")),
        (DeliveryArea.OUTSIDE_DHAKA, Decimal("1500"), Decimal("0")),
        (DeliveryArea.INSIDE_DHAKA, Decimal("3000"), Decimal("0")),
    ],
)
def test_calculate_shipping(area, subtotal, expected):
    assert calculate_shipping(area, subtotal) == expected


class TestRedisCartStore:

    def test_get_empty_cart(self, mock_redis):
        assert RedisCartStore(mock_redis).get_cart("u-1") == {"items": []}
        mock_redis.get.assert_called_once_with("cart:u-1")

    def test_get_cart(self, mock_redis):
        mock_redis.get.return_value = json.dumps([{"product_id": "3", "quantity": 2}])

        assert RedisCartStore(mock_redis).get_cart("u-1") == {"items": [{"product_id": 3, "quantity": 2}]}

    def test_save_and_clear(self, mock_redis):
        store = RedisCartStore(mock_redis)
        store.save_cart("u-1", [{"product_id": 3, "quantity": 1}])
        store.save_cart("u-1", [])

        key, ttl, payload = mock_redis.setex.call_args.args
        assert key == "cart:u-1"
        assert ttl == 60 * 60 * 24 * 7
        assert json.loads(payload) == [{"product_id": 3, "quantity": 1}]
        mock_redis.delete.assert_called_once_with("cart:u-1")
