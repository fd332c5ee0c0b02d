"""
Автоматическая ротация ключей динамических ключей.

Токен подписки не меняется: каждый ACTIVE ключ пула перевыпускается на
своём же сервере (новые пароль/порт), запись обновляется на месте, старый
удалённый ключ удаляется. Клиенты получают новые параметры при следующем
обновлении подписки.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import DynamicAccessKey, KeyStatus, RotationInterval, utcnow
from database.repository import FleetRepository
from vpn.outline_client import OutlineClientFactory

from .fleet_service import FleetLifecycle
from .sync_lock import LockService, SyncBusy, get_sync_lock, with_sync_lock

logger = logging.getLogger(__name__)


ROTATION_STEPS = {
    RotationInterval.DAILY: relativedelta(days=1),
    RotationInterval.WEEKLY: relativedelta(days=7),
    RotationInterval.BIWEEKLY: relativedelta(days=14),
    RotationInterval.MONTHLY: relativedelta(months=1),
}


@dataclass
class RotationResult:
    rotated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class RotationKeyResult:
    key_id: int
    key_name: str
    success: bool
    error: Optional[str] = None
    new_outline_key_id: Optional[str] = None


@dataclass
class DakRotation:
    """Итог ротации одного динамического ключа"""
    success: bool
    rotated_keys: int = 0
    total_keys: int = 0
    error: Optional[str] = None
    results: list[RotationKeyResult] = field(default_factory=list)


def calculate_next_rotation(interval, from_date: Optional[datetime] = None) -> Optional[datetime]:
    """
    Дата следующей ротации.

    Returns:
        None для NEVER и неизвестных интервалов
    """
    try:
        step = ROTATION_STEPS.get(RotationInterval(interval))
    except ValueError:
        return None
    if step is None:
        return None
    return (from_date or utcnow()) + step


def _rotation_enabled():
    return (
        DynamicAccessKey.rotation_enabled == True,
        DynamicAccessKey.rotation_interval != RotationInterval.NEVER,
        DynamicAccessKey.status == KeyStatus.ACTIVE,
    )


class RotationService:
    """Ротация ключей пулов по расписанию и вручную"""

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

    async def rotate_dynamic_key(self, dak_id: int) -> DakRotation:
        """
        Перевыпустить все ACTIVE ключи пула.

        Ошибка одного ключа логируется, остальные продолжают ротироваться.
        Пул без ключей тоже считается ротированным.
        """
        dak = await self.repo.get_dynamic_key(dak_id)
        if dak is None:
            return DakRotation(success=False, error="Dynamic key not found")

        keys = await self.repo.list_all_pool_keys(dak.id, KeyStatus.ACTIVE)
        results = []

        for key in keys:
            remote_name = f"{dak.name}-rotated-{int(time.time() * 1000)}"
            old_remote_id = key.outline_key_id
            try:
                outcome = await self.fleet.move_key(key, key.server, delete_from_source=True, remote_name=remote_name)
            except Exception as e:
                logger.error(f"Rotation: ключ \"{key.name}\" пула \"{dak.name}\" не ротирован: {e}")
                results.append(RotationKeyResult(key_id=key.id, key_name=key.name, success=False, error=str(e)))
                continue

            results.append(RotationKeyResult(
                key_id=key.id,
                key_name=key.name,
                success=True,
                new_outline_key_id=outcome.remote_key.id,
            ))
            logger.debug(
                f"Rotation: ключ \"{key.name}\" на \"{key.server.name}\" "
                f"(старый {old_remote_id} -> новый {outcome.remote_key.id})"
            )

        now = utcnow()
        dak.last_rotated_at = now
        dak.next_rotation_at = calculate_next_rotation(dak.rotation_interval, now)
        dak.rotation_count = (dak.rotation_count or 0) + 1
        await self.session.commit()

        rotated = sum(1 for r in results if r.success)
        logger.info(f"Rotation: пул \"{dak.name}\": ротировано {rotated}/{len(keys)} ключей")
        return DakRotation(success=True, rotated_keys=rotated, total_keys=len(keys), results=results)

    async def list_due(self, now: Optional[datetime] = None) -> list[DynamicAccessKey]:
        """Динамические ключи, которым пора ротироваться"""
        now = now or utcnow()
        result = await self.session.execute(
            select(DynamicAccessKey)
            .where(
                *_rotation_enabled(),
                or_(
                    DynamicAccessKey.next_rotation_at <= now,
                    and_(DynamicAccessKey.next_rotation_at.is_(None), DynamicAccessKey.last_rotated_at.is_(None)),
                ),
            )
            .order_by(DynamicAccessKey.id)
        )
        return list(result.scalars().all())

    async def count_not_due(self, now: datetime) -> int:
        result = await self.session.execute(
            select(func.count(DynamicAccessKey.id)).where(
                *_rotation_enabled(),
                DynamicAccessKey.next_rotation_at > now,
            )
        )
        return result.scalar() or 0

    async def check_key_rotations(self) -> RotationResult:
        """
        Ротировать все просроченные пулы (вызывается планировщиком).

        Выполняется под блокировкой массовых операций; если она занята,
        проверка пропускается до следующего запуска.
        """
        async def run() -> RotationResult:
            return await self._rotate_due()

        locked = await with_sync_lock(self.lock, "key-rotation", run)
        if not locked.success:
            logger.info("Rotation: пропуск, выполняется другая массовая операция")
            return RotationResult(errors=[locked.error])
        return locked.result

    async def _rotate_due(self) -> RotationResult:
        result = RotationResult()
        now = utcnow()

        for dak in await self.list_due(now):
            logger.debug(f"Rotation: пул \"{dak.name}\" (интервал {dak.rotation_interval.value})")
            rotation = await self.rotate_dynamic_key(dak.id)
            if rotation.success:
                result.rotated += 1
                result.errors.extend(
                    f"{dak.name}/{r.key_name}: {r.error}" for r in rotation.results if not r.success
                )
            else:
                result.errors.append(f"{dak.name}: {rotation.error}")

        result.skipped = await self.count_not_due(now)

        if result.rotated or result.errors:
            logger.info(
                f"Rotation: ротировано {result.rotated}, пропущено {result.skipped}, ошибок {len(result.errors)}"
            )
        return result

    async def trigger_manual_rotation(self, dak_id: int) -> DakRotation:
        """
        Ротация по запросу админа.

        Raises:
            SyncBusy: выполняется другая массовая операция
        """
        async def run() -> DakRotation:
            return await self.rotate_dynamic_key(dak_id)

        locked = await with_sync_lock(self.lock, f"rotation-{dak_id}", run)
        if not locked.success:
            raise SyncBusy(locked.error)
        return locked.result
