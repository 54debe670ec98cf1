from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from docvault.core.config import settings
from docvault.domain import models  # noqa: F401  注册所有表到 SQLModel.metadata


def build_engine(database_url: str):
    # [Fix] pool_pre_ping 自动处理断开的连接 (InterfaceError: connection is closed)
    return create_async_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True
    )


def build_session_maker(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(settings.DATABASE_URL)
async_session_maker = build_session_maker(engine)


async def create_db_and_tables(bind=None):
    """
    异步初始化数据库表结构。
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

