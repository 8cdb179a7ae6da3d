from .base import Base
from .session import engine


def init_db():
    """按模型定义建表（开发环境使用）"""
    import app.models  # noqa: F401  注册所有模型

    Base.metadata.create_all(bind=engine)


__all__ = ["Base", "engine", "init_db"]
