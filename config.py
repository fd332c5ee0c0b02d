"""
Конфигурация приложения.
Все секреты загружаются из .env файла.
"""
import logging
import os
from dotenv import load_dotenv

# Загружаем переменные из .env
load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Основная конфигурация"""

    # База данных
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///fleet_database.db")

    # HTTP сервер подписок
    HTTP_HOST: str = os.getenv("HTTP_HOST", "0.0.0.0")
    HTTP_PORT: int = int(os.getenv("HTTP_PORT", "8090") or "8090")

    # Логирование
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Таймзона (для планировщика)
    TIMEZONE: str = os.getenv("TIMEZONE", "UTC")

    # Фоновые задачи (минуты)
    ROTATION_CHECK_MINUTES: int = int(os.getenv("ROTATION_CHECK_MINUTES", "5") or "5")
    USAGE_SYNC_MINUTES: int = int(os.getenv("USAGE_SYNC_MINUTES", "10") or "10")
    EXPIRATION_CHECK_MINUTES: int = int(os.getenv("EXPIRATION_CHECK_MINUTES", "5") or "5")
    LIMIT_RESET_MINUTES: int = int(os.getenv("LIMIT_RESET_MINUTES", "60") or "60")
    SCHEDULER_ENABLED: bool = os.getenv("SCHEDULER_ENABLED", "1").strip().lower() in ("1", "true", "yes", "on")

    # Блокировка массовых операций: memory (один процесс) или database (общая аренда)
    LOCK_BACKEND: str = os.getenv("LOCK_BACKEND", "memory").strip().lower()

    @classmethod
    def validate(cls) -> bool:
        """Проверка обязательных переменных"""
        errors = []

        if not cls.DATABASE_URL:
            errors.append("DATABASE_URL не установлен")
        if cls.LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Неизвестный LOG_LEVEL: {cls.LOG_LEVEL}")
        for name in (
            "ROTATION_CHECK_MINUTES", "USAGE_SYNC_MINUTES", "EXPIRATION_CHECK_MINUTES", "LIMIT_RESET_MINUTES",
        ):
            if getattr(cls, name) <= 0:
                errors.append(f"{name} должен быть больше нуля")
        if cls.LOCK_BACKEND not in ("memory", "database"):
            errors.append(f"Неизвестный LOCK_BACKEND: {cls.LOCK_BACKEND}")

        if errors:
            for error in errors:
                logger.error(f"Ошибка конфигурации: {error}")
            return False

        logger.info("Конфигурация загружена успешно")
        return True


# Создаём экземпляр конфигурации
config = Config()
