import os
from decimal import Decimal
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # 数据库配置
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "123456")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "mydb")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    # 启动时按模型建表（仅开发环境）
    AUTO_CREATE_TABLES: bool = os.getenv("AUTO_CREATE_TABLES", "false").lower() == "true"
    
    # Redis 配置
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))

    # 缓存配置（秒）
    PRODUCT_CACHE_TTL: int = 300
    STOCK_CACHE_TTL: int = 300
    CART_TTL: int = 60 * 60 * 24 * 7
    # 进程内后备缓存的最大条目数
    LOCAL_CACHE_MAXSIZE: int = 1024
    # Redis 熔断：连续失败次数阈值与冷却时间
    CACHE_BREAKER_THRESHOLD: int = 3
    CACHE_BREAKER_COOLDOWN: int = 30

    # 运费配置（BDT）
    SHIPPING_FEE_INSIDE_DHAKA: Decimal = Decimal("60")
    SHIPPING_FEE_OUTSIDE_DHAKA: Decimal = Decimal("120")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("1500")
    CURRENCY: str = "BDT"

    # 下单与预占
    CHECKOUT_TIMEOUT_SECONDS: float = 30.0
    RESERVATION_TTL_MINUTES: int = 15
    ORDER_NUMBER_PREFIX: str = "SC"

    # 报表窗口（天）
    RESTOCK_WINDOW_DAYS: int = 7
    TOP_MOVERS_WINDOW_DAYS: int = 30
    TOP_MOVERS_LIMIT: int = 10

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+psycopg://"
            f"{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

settings = Settings()
