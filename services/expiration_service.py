"""
Периодическая проверка сроков и квот.
Запускается планировщиком, чтобы статусы были актуальны даже для ключей,
к которым давно не обращались клиенты.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AccessKey, DynamicAccessKey, KeyStatus, utcnow

logger = logging.getLogger(__name__)


class ExpirationService:
    """Перевод истёкших ключей в EXPIRED и исчерпавших квоту в DEPLETED"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def check_all(self, now: Optional[datetime] = None) -> dict:
        """
        Проверить ключи и динамические ключи.
        Возвращает количество изменённых записей по категориям.
        """
        now = now or utcnow()
        stats = {}

        for model, label in ((AccessKey, "keys"), (DynamicAccessKey, "dynamic_keys")):
            stats[f"{label}_expired"] = await self._expire(model, now)
            stats[f"{label}_depleted"] = await self._deplete(model)

        total = sum(stats.values())
        if total > 0:
            logger.info(f"Expiration: обновлено {total} записей: {stats}")

        return stats

    async def _expire(self, model, now: datetime) -> int:
        """ACTIVE/PENDING с прошедшим expires_at -> EXPIRED"""
        result = await self.session.execute(
            update(model)
            .where(
                and_(
                    model.status.in_([KeyStatus.ACTIVE, KeyStatus.PENDING]),
                    model.expires_at.is_not(None),
                    model.expires_at < now,
                )
            )
            .values(status=KeyStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        count = result.rowcount
        if count > 0:
            logger.debug(f"Expiration: {model.__tablename__} истекло: {count}")
        return count

    async def _deplete(self, model) -> int:
        """ACTIVE с used_bytes >= data_limit_bytes -> DEPLETED"""
        result = await self.session.execute(
            update(model)
            .where(
                and_(
                    model.status == KeyStatus.ACTIVE,
                    model.data_limit_bytes.is_not(None),
                    model.used_bytes >= model.data_limit_bytes,
                )
            )
            .values(status=KeyStatus.DEPLETED)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        count = result.rowcount
        if count > 0:
            logger.debug(f"Expiration: {model.__tablename__} квота исчерпана: {count}")
        return count
