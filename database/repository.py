"""
Запросы к хранилищу ключей и серверов.

Точечные выборки, фильтрованные сканы и атомарные обновления одной записи,
которыми пользуются сервисы подписки, миграции и ротации.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AccessKey, DynamicAccessKey, ExpirationType, KeyStatus, Server, server_tags,
)

logger = logging.getLogger(__name__)

Subscribable = Union[AccessKey, DynamicAccessKey]


@dataclass
class ServerStats:
    """Сырые показатели нагрузки сервера"""
    server_id: int
    server_name: str
    active_key_count: int = 0
    total_bytes: int = 0


class FleetRepository:
    """Доступ к записям Server / AccessKey / DynamicAccessKey"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # === ТОЧЕЧНЫЕ ВЫБОРКИ ===

    async def get_dynamic_key_by_token(self, token: str) -> Optional[DynamicAccessKey]:
        result = await self.session.execute(
            select(DynamicAccessKey).where(DynamicAccessKey.dynamic_url == token)
        )
        return result.scalar_one_or_none()

    async def get_access_key_by_token(self, token: str) -> Optional[AccessKey]:
        result = await self.session.execute(
            select(AccessKey).where(AccessKey.subscription_token == token)
        )
        return result.scalar_one_or_none()

    async def get_access_key(self, key_id: int) -> Optional[AccessKey]:
        return await self.session.get(AccessKey, key_id)

    async def get_dynamic_key(self, dak_id: int) -> Optional[DynamicAccessKey]:
        return await self.session.get(DynamicAccessKey, dak_id)

    async def get_server(self, server_id: int) -> Optional[Server]:
        return await self.session.get(Server, server_id)

    # === СКАНЫ ===

    async def list_eligible_servers(self, tag_ids: Iterable[int] = ()) -> list[Server]:
        """
        Активные серверы, подходящие под фильтр тегов.

        Пустой фильтр — все активные серверы. Иначе сервер должен иметь
        хотя бы один из тегов.
        """
        tag_ids = list(tag_ids)
        query = select(Server).where(Server.is_active == True)
        if tag_ids:
            tagged = select(server_tags.c.server_id).where(server_tags.c.tag_id.in_(tag_ids))
            query = query.where(Server.id.in_(tagged))
        result = await self.session.execute(query.order_by(Server.id))
        return list(result.scalars().all())

    async def list_pool_members(
        self,
        dak: DynamicAccessKey,
        statuses: Iterable[KeyStatus] = (KeyStatus.ACTIVE,),
    ) -> list[AccessKey]:
        """
        Ключи пула динамического ключа, пригодные для выдачи.

        Ключи на неактивных серверах и серверах вне фильтра тегов исключаются.
        """
        query = (
            select(AccessKey)
            .join(Server, AccessKey.server_id == Server.id)
            .where(
                AccessKey.dynamic_key_id == dak.id,
                AccessKey.status.in_(list(statuses)),
                Server.is_active == True,
            )
        )
        tag_ids = dak.tag_ids
        if tag_ids:
            tagged = select(server_tags.c.server_id).where(server_tags.c.tag_id.in_(tag_ids))
            query = query.where(Server.id.in_(tagged))
        result = await self.session.execute(query.order_by(AccessKey.id))
        return list(result.scalars().unique().all())

    async def list_all_pool_keys(self, dak_id: int, status: KeyStatus = KeyStatus.ACTIVE) -> list[AccessKey]:
        """Все ключи пула с заданным статусом, без фильтра по серверам"""
        result = await self.session.execute(
            select(AccessKey)
            .where(AccessKey.dynamic_key_id == dak_id, AccessKey.status == status)
            .order_by(AccessKey.id)
        )
        return list(result.scalars().unique().all())

    async def find_self_managed_member(self, dak_id: int, tag_ids: Iterable[int] = ()) -> Optional[AccessKey]:
        """
        Активный автоматически созданный ключ пула (если есть).

        Ключ на сервере вне фильтра тегов не подходит.
        """
        query = (
            select(AccessKey)
            .join(Server, AccessKey.server_id == Server.id)
            .where(
                AccessKey.dynamic_key_id == dak_id,
                AccessKey.is_self_managed == True,
                AccessKey.status == KeyStatus.ACTIVE,
                Server.is_active == True,
            )
        )
        tag_ids = list(tag_ids)
        if tag_ids:
            tagged = select(server_tags.c.server_id).where(server_tags.c.tag_id.in_(tag_ids))
            query = query.where(Server.id.in_(tagged))
        result = await self.session.execute(query.order_by(AccessKey.id).limit(1))
        return result.scalars().first()

    async def list_keys_on_server(
        self,
        server_id: int,
        statuses: Iterable[KeyStatus] = (KeyStatus.ACTIVE, KeyStatus.PENDING),
        key_ids: Optional[Iterable[int]] = None,
    ) -> list[AccessKey]:
        query = select(AccessKey).where(
            AccessKey.server_id == server_id,
            AccessKey.status.in_(list(statuses)),
        )
        if key_ids:
            query = query.where(AccessKey.id.in_(list(key_ids)))
        result = await self.session.execute(query.order_by(AccessKey.name))
        return list(result.scalars().unique().all())

    async def server_load_stats(self, server_ids: Iterable[int]) -> dict[int, ServerStats]:
        """
        Количество активных ключей и суммарный трафик по каждому серверу.

        Серверы без активных ключей тоже попадают в результат (с нулями).
        """
        server_ids = list(server_ids)
        if not server_ids:
            return {}

        servers = await self.session.execute(
            select(Server.id, Server.name).where(Server.id.in_(server_ids))
        )
        stats = {
            row.id: ServerStats(server_id=row.id, server_name=row.name)
            for row in servers
        }

        rows = await self.session.execute(
            select(
                AccessKey.server_id,
                func.count(AccessKey.id),
                func.coalesce(func.sum(AccessKey.used_bytes), 0),
            )
            .where(
                AccessKey.server_id.in_(server_ids),
                AccessKey.status == KeyStatus.ACTIVE,
            )
            .group_by(AccessKey.server_id)
        )
        for server_id, count, total in rows:
            if server_id in stats:
                stats[server_id].active_key_count = int(count or 0)
                stats[server_id].total_bytes = int(total or 0)

        return stats

    # === АТОМАРНЫЕ ОБНОВЛЕНИЯ ===

    async def mark_expired(self, entity: Subscribable) -> bool:
        """
        Перевести запись в EXPIRED.

        Условное обновление: повторный вызов ничего не меняет.
        Возвращает True, если статус изменился именно сейчас.
        """
        model = type(entity)
        result = await self.session.execute(
            update(model)
            .where(model.id == entity.id, model.status != KeyStatus.EXPIRED)
            .values(status=KeyStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        await self.session.refresh(entity)
        return result.rowcount == 1

    async def activate_on_first_use(
        self,
        entity: Subscribable,
        now: datetime,
        expires_at: Optional[datetime],
    ) -> bool:
        """
        Активация START_ON_FIRST_USE ключа при первом обращении.

        Срабатывает только для PENDING записи без first_used_at, поэтому
        expires_at вычисляется ровно один раз. Проигравший в гонке просто
        перечитывает запись.
        """
        model = type(entity)
        result = await self.session.execute(
            update(model)
            .where(
                model.id == entity.id,
                model.status == KeyStatus.PENDING,
                model.expiration_type == ExpirationType.START_ON_FIRST_USE,
                model.first_used_at.is_(None),
            )
            .values(status=KeyStatus.ACTIVE, first_used_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        await self.session.refresh(entity)
        return result.rowcount == 1

    async def update_round_robin_cursor(self, dak: DynamicAccessKey, expected: int, new_index: int) -> bool:
        """
        Compare-and-set курсора round-robin.

        False означает, что параллельный запрос успел сдвинуть курсор
        (потерянное обновление). Курсор при этом всё равно записывается.
        """
        result = await self.session.execute(
            update(DynamicAccessKey)
            .where(
                DynamicAccessKey.id == dak.id,
                DynamicAccessKey.last_selected_key_index == expected,
            )
            .values(last_selected_key_index=new_index)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.execute(
                update(DynamicAccessKey)
                .where(DynamicAccessKey.id == dak.id)
                .values(last_selected_key_index=new_index)
                .execution_options(synchronize_session=False)
            )
        await self.session.commit()
        await self.session.refresh(dak)
        return result.rowcount == 1
