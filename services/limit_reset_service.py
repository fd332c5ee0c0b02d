"""
Периодический сброс квоты трафика.

Для ключей с data_limit_reset_strategy != NEVER, у которых прошёл интервал
с последнего сброса: used_bytes начинается с нуля (usage_offset = минус
текущий счётчик сервера), DEPLETED ключи снова становятся ACTIVE, а лимит на
сервере выставляется как «счётчик + квота».
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AccessKey, DataLimitResetStrategy, KeyStatus, Server, utcnow
from database.repository import FleetRepository
from vpn.outline_client import OutlineApiError, OutlineClientFactory

from .fleet_service import FleetLifecycle
from .sync_lock import LockService, get_sync_lock, with_sync_lock

logger = logging.getLogger(__name__)


RESET_STEPS = {
    DataLimitResetStrategy.DAILY: relativedelta(days=1),
    DataLimitResetStrategy.WEEKLY: relativedelta(days=7),
    DataLimitResetStrategy.MONTHLY: relativedelta(months=1),
}

RESETTABLE_STATUSES = (KeyStatus.ACTIVE, KeyStatus.PENDING, KeyStatus.DEPLETED)


@dataclass
class LimitResetResult:
    keys_reset: int = 0
    keys_reactivated: int = 0
    errors: list[str] = field(default_factory=list)


def is_reset_due(strategy, last_reset: Optional[datetime], now: datetime) -> bool:
    """Прошёл ли интервал сброса. Ключ, который ни разу не сбрасывался, — сразу"""
    try:
        step = RESET_STEPS.get(DataLimitResetStrategy(strategy))
    except ValueError:
        return False
    if step is None:
        return False
    if last_reset is None:
        return True
    return last_reset + step <= now


class LimitResetService:
    """Сброс квот по расписанию"""

    def __init__(
        self,
        session: AsyncSession,
        client_factory: Optional[OutlineClientFactory] = None,
        lock: Optional[LockService] = None,
    ):
        self.session = session
        self.repo = FleetRepository(session)
        self.fleet = FleetLifecycle(session, client_factory)
        self.lock = lock or get_sync_lock()

    async def check_periodic_limits(self, now: Optional[datetime] = None) -> LimitResetResult:
        """
        Сбросить квоты всех ключей, которым пора.

        Выполняется под блокировкой массовых операций (синхронизация трафика
        пишет те же поля).
        """
        async def run() -> LimitResetResult:
            return await self._reset_due(now or utcnow())

        locked = await with_sync_lock(self.lock, "limit-reset", run)
        if not locked.success:
            logger.info("Limit reset: пропуск, выполняется другая массовая операция")
            return LimitResetResult(errors=[locked.error])
        return locked.result

    async def _reset_due(self, now: datetime) -> LimitResetResult:
        result = LimitResetResult()

        for server in await self.repo.list_eligible_servers():
            keys = await self.repo.list_keys_on_server(server.id, statuses=RESETTABLE_STATUSES)
            due = [k for k in keys if is_reset_due(k.data_limit_reset_strategy, k.last_data_limit_reset, now)]
            if not due:
                continue

            try:
                metrics = await self.fleet.client_factory(server).get_transfer_metrics()
            except OutlineApiError as e:
                logger.warning(f"Limit reset: сервер \"{server.name}\" недоступен: {e}")
                result.errors.append(f"{server.name}: {e}")
                continue

            for key in due:
                reactivated, error = await self.reset_key(key, server, int(metrics.get(str(key.outline_key_id), 0)), now)
                result.keys_reset += 1
                if reactivated:
                    result.keys_reactivated += 1
                if error:
                    result.errors.append(f"{server.name}/{key.name}: {error}")

        if result.keys_reset or result.errors:
            logger.info(
                f"Limit reset: сброшено {result.keys_reset}, реактивировано {result.keys_reactivated}, "
                f"ошибок {len(result.errors)}"
            )
        return result

    async def reset_key(self, key: AccessKey, server: Server, remote_bytes: int, now: datetime):
        """
        Сбросить квоту одного ключа.

        Returns:
            (реактивирован ли ключ, ошибка обновления лимита на сервере или None)
        """
        reactivated = key.status == KeyStatus.DEPLETED

        key.usage_offset = -remote_bytes
        key.used_bytes = 0
        key.last_data_limit_reset = now
        if reactivated:
            key.status = KeyStatus.ACTIVE
        await self.session.commit()

        logger.debug(
            f"Limit reset: ключ \"{key.name}\" ({key.data_limit_reset_strategy.value}), счётчик сервера {remote_bytes}"
        )

        if key.data_limit_bytes is not None:
            step = await self.fleet.copy_limit(server, key.outline_key_id, remote_bytes + key.data_limit_bytes)
            return reactivated, step.error

        # Квоты нет: снимаем лимит, оставшийся на сервере
        try:
            await self.fleet.client_factory(server).remove_access_key_data_limit(key.outline_key_id)
        except OutlineApiError as e:
            logger.warning(f"Limit reset: не удалось снять лимит ключа {key.outline_key_id} на {server.name}: {e}")
            return reactivated, str(e)
        return reactivated, None
