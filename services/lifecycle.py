"""
Проверка жизненного цикла ключа перед выдачей.

Одинакова для обычных и динамических ключей:
DISABLED / EXPIRED / DEPLETED -> Gone, истёкший срок -> EXPIRED + Gone,
исчерпанная квота -> Gone. PENDING ключ с START_ON_FIRST_USE
активируется при первом обращении.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from database.models import ExpirationType, KeyStatus, utcnow
from database.repository import FleetRepository, Subscribable

from .errors import Gone

logger = logging.getLogger(__name__)


TERMINAL_MESSAGES = {
    KeyStatus.DISABLED: "Subscription has been disabled",
    KeyStatus.EXPIRED: "Subscription has expired",
    KeyStatus.DEPLETED: "Data limit exceeded",
}


def first_use_expiry(first_used_at: datetime, duration_days: Optional[int]) -> Optional[datetime]:
    """Срок действия от первого использования (None — бессрочно)"""
    if duration_days is None:
        return None
    return first_used_at + timedelta(days=duration_days)


def is_over_quota(entity: Subscribable) -> bool:
    limit = entity.data_limit_bytes
    return limit is not None and (entity.used_bytes or 0) >= limit


async def check_lifecycle(repo: FleetRepository, entity: Subscribable, now: Optional[datetime] = None) -> None:
    """
    Пропустить запись или бросить Gone.

    Переход в EXPIRED сохраняется до ответа клиенту.
    """
    now = now or utcnow()

    message = TERMINAL_MESSAGES.get(entity.status)
    if message:
        raise Gone(message)

    if entity.expires_at is not None and entity.expires_at < now:
        changed = await repo.mark_expired(entity)
        if changed:
            logger.info(f"VPN sub: {type(entity).__name__} id={entity.id} истёк, статус EXPIRED")
        raise Gone(TERMINAL_MESSAGES[KeyStatus.EXPIRED])

    if is_over_quota(entity):
        raise Gone(TERMINAL_MESSAGES[KeyStatus.DEPLETED])


async def activate_on_first_use(repo: FleetRepository, entity: Subscribable, now: Optional[datetime] = None) -> bool:
    """
    Активировать PENDING ключ с START_ON_FIRST_USE.

    expires_at вычисляется один раз; повторные вызовы ничего не меняют.
    """
    if entity.status != KeyStatus.PENDING or entity.expiration_type != ExpirationType.START_ON_FIRST_USE:
        return False
    if entity.first_used_at is not None:
        return False

    now = now or utcnow()
    activated = await repo.activate_on_first_use(entity, now, first_use_expiry(now, entity.duration_days))
    if activated:
        logger.info(
            f"VPN sub: {type(entity).__name__} id={entity.id} активирован при первом использовании, "
            f"истекает {entity.expires_at or 'никогда'}"
        )
    return activated


async def enforce_lifecycle(repo: FleetRepository, entity: Subscribable, now: Optional[datetime] = None) -> None:
    """Полная проверка: гейт, затем активация при первом использовании"""
    now = now or utcnow()
    await check_lifecycle(repo, entity, now)
    await activate_on_first_use(repo, entity, now)
