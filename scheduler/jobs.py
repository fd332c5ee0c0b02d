"""
Планировщик задач (APScheduler).
Ротация ключей, синхронизация трафика, проверка сроков, сброс квот.
"""
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import pytz

from config import config

logger = logging.getLogger(__name__)

# Глобальный планировщик
scheduler = AsyncIOScheduler(timezone=pytz.timezone(config.TIMEZONE))


async def key_rotation_job(get_session):
    """Ротация ключей динамических ключей, которым подошёл срок"""
    from services.rotation_service import RotationService

    try:
        async with get_session() as session:
            result = await RotationService(session).check_key_rotations()

        if result.rotated:
            logger.info(f"🔄 Ротация: {result.rotated} пулов, пропущено {result.skipped}")
        for error in result.errors:
            logger.warning(f"⚠️ Ротация: {error}")
    except Exception as e:
        logger.error(f"❌ Ошибка ротации ключей: {e}")


async def usage_sync_job(get_session):
    """Синхронизация трафика со всех серверов"""
    from services.usage_sync_service import UsageSyncService

    try:
        async with get_session() as session:
            result = await UsageSyncService(session).sync_all()

        for error in result.errors:
            logger.warning(f"⚠️ Синхронизация трафика: {error}")
    except Exception as e:
        logger.error(f"❌ Ошибка синхронизации трафика: {e}")


async def expiration_job(get_session):
    """Перевод истёкших и исчерпавших квоту ключей в терминальные статусы"""
    from services.expiration_service import ExpirationService

    try:
        async with get_session() as session:
            stats = await ExpirationService(session).check_all()

        total = sum(stats.values())
        if total > 0:
            logger.info(f"⏰ Проверка сроков: обновлено {total} записей")
    except Exception as e:
        logger.error(f"❌ Ошибка проверки сроков: {e}")


async def limit_reset_job(get_session):
    """Периодический сброс квот трафика"""
    from services.limit_reset_service import LimitResetService

    try:
        async with get_session() as session:
            result = await LimitResetService(session).check_periodic_limits()

        if result.keys_reset:
            logger.info(f"♻️ Сброс квот: {result.keys_reset} ключей, реактивировано {result.keys_reactivated}")
        for error in result.errors:
            logger.warning(f"⚠️ Сброс квот: {error}")
    except Exception as e:
        logger.error(f"❌ Ошибка сброса квот: {e}")


def setup_scheduler(get_session):
    """Настройка всех запланированных задач"""

    # Ротация ключей
    scheduler.add_job(
        key_rotation_job,
        IntervalTrigger(minutes=config.ROTATION_CHECK_MINUTES),
        args=[get_session],
        id="key_rotation",
        replace_existing=True,
    )

    # Синхронизация трафика
    scheduler.add_job(
        usage_sync_job,
        IntervalTrigger(minutes=config.USAGE_SYNC_MINUTES),
        args=[get_session],
        id="usage_sync",
        replace_existing=True,
    )

    # Проверка сроков и квот
    scheduler.add_job(
        expiration_job,
        IntervalTrigger(minutes=config.EXPIRATION_CHECK_MINUTES),
        args=[get_session],
        id="expiration_check",
        replace_existing=True,
    )

    # Сброс квот по расписанию
    scheduler.add_job(
        limit_reset_job,
        IntervalTrigger(minutes=config.LIMIT_RESET_MINUTES),
        args=[get_session],
        id="limit_reset",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("✅ Планировщик задач запущен")
    logger.info(f"   🔄 Ротация ключей: каждые {config.ROTATION_CHECK_MINUTES} мин")
    logger.info(f"   📊 Синхронизация трафика: каждые {config.USAGE_SYNC_MINUTES} мин")
    logger.info(f"   ⏰ Проверка сроков: каждые {config.EXPIRATION_CHECK_MINUTES} мин")
    logger.info(f"   ♻️ Сброс квот: каждые {config.LIMIT_RESET_MINUTES} мин")

    return scheduler
