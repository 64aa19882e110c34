from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # 并发写入时等待锁释放，而不是立即报 database is locked
        connect_args = {"check_same_thread": False, "timeout": 15}
    return create_async_engine(url, echo=False, connect_args=connect_args)


def make_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.database_url)

AsyncSessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind=None) -> None:
    """创建所有表（含部分唯一索引）"""
    from app.models import db_models  # noqa: F401  触发模型注册

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
