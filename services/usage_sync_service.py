"""
Синхронизация трафика с серверами Outline.

Для каждого активного сервера запрашивается /metrics/transfer:
used_bytes ключа = usage_offset + трафик текущего удалённого ключа.
Затем used_bytes динамических ключей пересчитывается как сумма по пулу.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AccessKey, DynamicAccessKey, KeyStatus, Server
from vpn.outline_client import OutlineApiError, OutlineClientFactory, create_outline_client

from .sync_lock import LockService, get_sync_lock, with_sync_lock

logger = logging.getLogger(__name__)


@dataclass
class UsageSyncResult:
    servers_synced: int = 0
    keys_updated: int = 0
    dynamic_keys_updated: int = 0
    errors: list[str] = field(default_factory=list)


class UsageSyncService:
    """Обновление used_bytes по данным серверов"""

    def __init__(
        self,
        session: AsyncSession,
        client_factory: Optional[OutlineClientFactory] = None,
        lock: Optional[LockService] = None,
    ):
        self.session = session
        self.client_factory = client_factory or create_outline_client
        self.lock = lock or get_sync_lock()

    async def sync_all(self) -> UsageSyncResult:
        """Синхронизировать весь флот под блокировкой массовых операций"""
        locked = await with_sync_lock(self.lock, "usage-sync", self._sync_all)
        if not locked.success:
            logger.info("Usage sync: пропуск, выполняется другая массовая операция")
            return UsageSyncResult(errors=[locked.error])
        return locked.result

    async def _sync_all(self) -> UsageSyncResult:
        result = UsageSyncResult()

        servers = await self.session.execute(
            select(Server).where(Server.is_active == True).order_by(Server.id)
        )
        for server in servers.scalars().all():
            try:
                result.keys_updated += await self.sync_server(server)
                result.servers_synced += 1
            except OutlineApiError as e:
                logger.warning(f"Usage sync: сервер \"{server.name}\" недоступен: {e}")
                result.errors.append(f"{server.name}: {e}")

        result.dynamic_keys_updated = await self.roll_up_dynamic_keys()

        logger.info(
            f"Usage sync: серверов {result.servers_synced}, ключей {result.keys_updated}, "
            f"динамических {result.dynamic_keys_updated}, ошибок {len(result.errors)}"
        )
        return result

    async def sync_server(self, server: Server) -> int:
        """
        Обновить трафик ключей одного сервера.

        Returns:
            Количество ключей, у которых изменился used_bytes
        """
        metrics = await self.client_factory(server).get_transfer_metrics()

        keys = await self.session.execute(
            select(AccessKey).where(
                AccessKey.server_id == server.id,
                AccessKey.status.in_([KeyStatus.ACTIVE, KeyStatus.PENDING, KeyStatus.DEPLETED]),
            )
        )

        updated = 0
        for key in keys.scalars().unique().all():
            remote_bytes = metrics.get(str(key.outline_key_id))
            if remote_bytes is None:
                continue
            used = max(0, (key.usage_offset or 0) + int(remote_bytes))
            if used != key.used_bytes:
                key.used_bytes = used
                updated += 1

        await self.session.commit()
        return updated

    async def roll_up_dynamic_keys(self) -> int:
        """used_bytes динамического ключа = сумма used_bytes ключей пула"""
        totals = await self.session.execute(
            select(AccessKey.dynamic_key_id, func.coalesce(func.sum(AccessKey.used_bytes), 0))
            .where(AccessKey.dynamic_key_id.is_not(None))
            .group_by(AccessKey.dynamic_key_id)
        )

        updated = 0
        for dak_id, total in totals.all():
            result = await self.session.execute(
                update(DynamicAccessKey)
                .where(DynamicAccessKey.id == dak_id, DynamicAccessKey.used_bytes != int(total))
                .values(used_bytes=int(total))
                .execution_options(synchronize_session=False)
            )
            updated += result.rowcount

        await self.session.commit()
        return updated
