"""
Миграция ключей между серверами.

Для каждого ключа: создать ключ на целевом сервере, перенести лимит,
перенаправить запись (трафик сохраняется через usage_offset), удалить
старый ключ с исходного сервера. Ошибка одного ключа не прерывает пакет.

Токены подписки не меняются — клиенты после миграции просто получают
новые параметры подключения.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import DynamicAccessKey
from database.repository import FleetRepository
from vpn.outline_client import OutlineApiError, OutlineClientFactory

from .errors import NotFound
from .fleet_service import FleetLifecycle
from .sync_lock import LockService, SyncBusy, get_sync_lock, with_sync_lock

logger = logging.getLogger(__name__)


@dataclass
class MigrationKeyResult:
    key_id: int
    key_name: str
    success: bool
    error: Optional[str] = None
    new_outline_key_id: Optional[str] = None


@dataclass
class MigrationResult:
    migrated: int = 0
    failed: int = 0
    total: int = 0
    results: list[MigrationKeyResult] = field(default_factory=list)


class MigrationService:
    """Перенос ключей с одного сервера на другой"""

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

    async def get_migration_preview(
        self,
        source_server_id: int,
        target_server_id: int,
        key_ids: Optional[Iterable[int]] = None,
    ) -> dict:
        """
        Что будет перенесено.

        Args:
            key_ids: пусто — все ACTIVE/PENDING ключи исходного сервера

        Raises:
            NotFound: исходный или целевой сервер не найден
        """
        source = await self.repo.get_server(source_server_id)
        if source is None:
            raise NotFound("Source server not found")
        target = await self.repo.get_server(target_server_id)
        if target is None:
            raise NotFound("Target server not found")

        keys = await self.repo.list_keys_on_server(source_server_id, key_ids=key_ids)

        dak_ids = {k.dynamic_key_id for k in keys if k.dynamic_key_id}
        dak_names = {}
        if dak_ids:
            rows = await self.session.execute(
                select(DynamicAccessKey.id, DynamicAccessKey.name).where(DynamicAccessKey.id.in_(dak_ids))
            )
            dak_names = {row.id: row.name for row in rows}

        target_reachable = await self.check_reachable(target)

        return {
            "source_server": {"id": source.id, "name": source.name, "location": source.location},
            "target_server": {
                "id": target.id,
                "name": target.name,
                "location": target.location,
                "reachable": target_reachable,
            },
            "keys": [
                {
                    "id": k.id,
                    "name": k.name,
                    "outline_key_id": k.outline_key_id,
                    "status": k.status.value,
                    "used_bytes": k.used_bytes,
                    "data_limit_bytes": k.data_limit_bytes,
                    "dynamic_key_id": k.dynamic_key_id,
                    "dynamic_key_name": dak_names.get(k.dynamic_key_id),
                }
                for k in keys
            ],
            "total_keys": len(keys),
        }

    async def check_reachable(self, server) -> bool:
        """Отвечает ли Management API сервера"""
        try:
            await self.fleet.client_factory(server).get_server_info()
            return True
        except OutlineApiError as e:
            logger.warning(f"Migration: сервер \"{server.name}\" недоступен: {e}")
            return False

    async def migrate_single_key(
        self,
        key_id: int,
        target_server_id: int,
        delete_from_source: bool = True,
    ) -> MigrationKeyResult:
        """Перенести один ключ. Ошибка возвращается в результате, не бросается"""
        key = await self.repo.get_access_key(key_id)
        if key is None:
            return MigrationKeyResult(key_id=key_id, key_name="Unknown", success=False, error="Key not found")

        target = await self.repo.get_server(target_server_id)
        if target is None:
            return MigrationKeyResult(key_id=key_id, key_name=key.name, success=False, error="Target server not found")
        if not target.is_active:
            return MigrationKeyResult(key_id=key_id, key_name=key.name, success=False, error="Target server is inactive")
        if key.server_id == target.id:
            return MigrationKeyResult(
                key_id=key_id, key_name=key.name, success=False, error="Key is already on the target server"
            )

        source_name = key.server.name if key.server is not None else key.server_id

        try:
            outcome = await self.fleet.move_key(key, target, delete_from_source=delete_from_source)
        except Exception as e:
            logger.error(f"Migration: ключ \"{key.name}\" (id={key_id}) не перенесён на \"{target.name}\": {e}")
            return MigrationKeyResult(key_id=key_id, key_name=key.name, success=False, error=str(e))

        for step in outcome.warnings:
            logger.warning(f"Migration: ключ \"{key.name}\": шаг {step.step} не выполнен: {step.error}")

        logger.info(
            f"Migration: ключ \"{key.name}\" перенесён {source_name} -> {target.name} "
            f"(remote {outcome.remote_key.id})"
        )
        return MigrationKeyResult(
            key_id=key_id,
            key_name=key.name,
            success=True,
            new_outline_key_id=outcome.remote_key.id,
        )

    async def migrate_keys(
        self,
        source_server_id: int,
        target_server_id: int,
        key_ids: Optional[Iterable[int]] = None,
        delete_from_source: bool = True,
    ) -> MigrationResult:
        """
        Пакетная миграция под блокировкой массовых операций.

        Ключи обрабатываются последовательно, чтобы не перегружать API серверов.

        Raises:
            ValueError: исходный и целевой сервер совпадают
            SyncBusy: выполняется другая массовая операция
        """
        if source_server_id == target_server_id:
            raise ValueError("Source and target servers must be different")

        async def run() -> MigrationResult:
            return await self._migrate_batch(source_server_id, target_server_id, key_ids, delete_from_source)

        locked = await with_sync_lock(self.lock, f"migration-{source_server_id}-{target_server_id}", run)
        if not locked.success:
            raise SyncBusy(locked.error)
        return locked.result

    async def _migrate_batch(
        self,
        source_server_id: int,
        target_server_id: int,
        key_ids: Optional[Iterable[int]],
        delete_from_source: bool,
    ) -> MigrationResult:
        key_ids = list(key_ids or [])
        if not key_ids:
            keys = await self.repo.list_keys_on_server(source_server_id)
            key_ids = [k.id for k in keys]

        result = MigrationResult(total=len(key_ids))
        for key_id in key_ids:
            item = await self.migrate_single_key(key_id, target_server_id, delete_from_source)
            result.results.append(item)
            if item.success:
                result.migrated += 1
            else:
                result.failed += 1

        logger.info(
            f"Migration: сервер {source_server_id} -> {target_server_id}: "
            f"перенесено {result.migrated}, ошибок {result.failed} из {result.total}"
        )
        return result
