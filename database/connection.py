"""
Подключение к базе данных.
"""
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from config import config
from .models import Base

logger = logging.getLogger(__name__)


def make_async_url(url: str) -> str:
    """sqlite:///x.db -> sqlite+aiosqlite:///x.db, postgres -> asyncpg"""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


# Создаём асинхронный движок
DATABASE_URL = make_async_url(config.DATABASE_URL)

engine = create_async_engine(
    DATABASE_URL,
    echo=False,  # True для дебага SQL запросов
)

# Фабрика сессий
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db():
    """Инициализация базы данных (создание таблиц)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("База данных инициализирована")


async def get_session() -> AsyncSession:
    """Получить сессию для работы с БД"""
    async with async_session() as session:
        yield session
