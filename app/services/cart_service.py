"""购物车存储（外部协作方的 Redis 适配）"""

import json
import logging
from typing import List

from redis import Redis

from app.core.config import settings

logger = logging.getLogger(__name__)


class RedisCartStore:
    """购物车以 JSON 存在 cart:{user_id}"""

    def __init__(self, redis: Redis):
        self.redis = redis

    @staticmethod
    def _key(user_id: str) -> str:
        return f"cart:{user_id}"

    def get_cart(self, user_id: str) -> dict:
        raw = self.redis.get(self._key(user_id))
        if raw is None:
            return {"items": []}
        items = json.loads(raw)
        return {
            "items": [
                {"product_id": int(item["product_id"]), "quantity": int(item["quantity"])}
                for item in items
            ]
        }

    def save_cart(self, user_id: str, items: List[dict]):
        if not items:
            self.redis.delete(self._key(user_id))
            logger.debug(f"Cart cleared for user {user_id}")
            return
        self.redis.setex(self._key(user_id), settings.CART_TTL, json.dumps(items))
