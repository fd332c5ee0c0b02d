"""
Точка входа приложения.
Сервер подписок Outline флота и фоновые задачи.
"""
import asyncio
import logging

import uvicorn

from config import config
from database import init_db, async_session
from scheduler import setup_scheduler
from services.sync_lock import StoreLeaseLockService, set_sync_lock
from vpn.subscription import app as subscription_app

logger = logging.getLogger(__name__)


async def on_startup():
    """Действия при запуске"""
    # Проверяем конфигурацию
    if not config.validate():
        raise ValueError("Ошибка конфигурации. Проверьте .env файл.")

    # Инициализируем базу данных
    await init_db()

    # Общая блокировка для нескольких процессов
    if config.LOCK_BACKEND == "database":
        set_sync_lock(StoreLeaseLockService(async_session))
        logger.info("🔒 Блокировка синхронизации: аренда в БД")

    # Запускаем планировщик
    if config.SCHEDULER_ENABLED:
        setup_scheduler(async_session)
    else:
        logger.info("ℹ️ Планировщик отключён (SCHEDULER_ENABLED=0)")

    logger.info("🚀 Сервис запущен!")


async def run_subscription_server():
    """Запустить FastAPI сервер подписок"""
    config_uvicorn = uvicorn.Config(
        subscription_app,
        host=config.HTTP_HOST,
        port=config.HTTP_PORT,
        log_level="warning",  # Меньше логов
    )
    server = uvicorn.Server(config_uvicorn)
    logger.info(f"🌐 Сервер подписок на {config.HTTP_HOST}:{config.HTTP_PORT}")
    await server.serve()


async def main():
    """Главная функция"""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    await on_startup()

    try:
        await run_subscription_server()
    finally:
        logger.info("👋 Сервис остановлен")


if __name__ == "__main__":
    asyncio.run(main())
