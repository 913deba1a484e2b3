"""
数据库配置和连接管理
"""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    drivername = url.drivername

    if "+" in drivername:
        return database_url

    driver_map = {
        "postgresql": "postgresql+asyncpg",
        "postgres": "postgresql+asyncpg",
        "sqlite": "sqlite+aiosqlite",
    }

    if drivername not in driver_map:
        raise ValueError(f"不支持的数据库驱动: {drivername}. 请使用 async 驱动或更新 DATABASE__URL")

    return str(url.set(drivername=driver_map[drivername]))


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """创建异步引擎；PostgreSQL 下设置语句超时，避免账本 I/O 无限挂起"""
    url = _build_async_url(database_url)
    kwargs: dict = {"echo": echo, "pool_pre_ping": True}
    if make_url(url).get_backend_name() == "postgresql":
        timeout_ms = int(settings.database.statement_timeout * 1000)
        kwargs["pool_size"] = settings.database.pool_size
        kwargs["connect_args"] = {"server_settings": {"statement_timeout": str(timeout_ms)}}
    else:
        kwargs["connect_args"] = {"timeout": settings.database.statement_timeout}
    return create_async_engine(url, **kwargs)


engine = build_engine(settings.database.url, echo=settings.DEBUG)

# 创建异步会话工厂
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def create_tables(bind: AsyncEngine = engine):
    """
    创建所有表

    根据models中定义的所有模型创建对应的数据库表
    """
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

