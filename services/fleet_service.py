"""
Жизненный цикл ключа во флоте серверов.

Общая последовательность для автосоздания ключей пула, миграции и ротации:
1. create — создать ключ на целевом сервере
2. copy limit — перенести квоту (ошибка не фатальна)
3. rewrite record — перенаправить запись на новый ключ, сохранив трафик
4. delete from source — удалить старый ключ (ошибка не фатальна)
"""
import logging
import secrets
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AccessKey, ExpirationType, KeyStatus, Server
from vpn.config import get_config
from vpn.outline_client import OutlineClientFactory, RemoteAccessKey, create_outline_client

logger = logging.getLogger(__name__)


STEP_CREATE = "create"
STEP_COPY_LIMIT = "copy_limit"
STEP_REWRITE = "rewrite_record"
STEP_DELETE_SOURCE = "delete_from_source"


class FleetError(Exception):
    """Фатальная ошибка шага create/rewrite"""


@dataclass
class StepResult:
    """Результат одного шага (fatal=False — ошибка только логируется)"""
    step: str
    ok: bool
    fatal: bool = False
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class MoveOutcome:
    """Итог перемещения ключа"""
    key: AccessKey
    remote_key: RemoteAccessKey
    steps: list[StepResult] = field(default_factory=list)

    @property
    def warnings(self) -> list[StepResult]:
        return [s for s in self.steps if not s.ok and not s.skipped]


def generate_token(length: int = 32) -> str:
    """Случайный токен подписки"""
    return secrets.token_urlsafe(length)[:length]


class FleetLifecycle:
    """Шаги create / copy limit / rewrite / delete над одним ключом"""

    def __init__(self, session: AsyncSession, client_factory: Optional[OutlineClientFactory] = None):
        self.session = session
        self.client_factory = client_factory or create_outline_client
        self.config = get_config()

    # === ШАГИ ===

    async def create_on_server(self, server: Server, name: str, method: Optional[str] = None) -> RemoteAccessKey:
        """
        Шаг 1: создать ключ на сервере.

        Ошибка фатальна для этого ключа (OutlineApiError пробрасывается).
        """
        if not server.is_active:
            raise FleetError(f"Server {server.name} is inactive")

        client = self.client_factory(server)
        return await client.create_access_key(name=name, method=method or self.config.default_method)

    async def copy_limit(self, server: Server, remote_key_id: str, limit_bytes: Optional[int]) -> StepResult:
        """Шаг 2: перенести квоту. Ошибка логируется, локальная проверка квоты остаётся"""
        if limit_bytes is None:
            return StepResult(step=STEP_COPY_LIMIT, ok=True, skipped=True)

        try:
            await self.client_factory(server).set_access_key_data_limit(remote_key_id, int(limit_bytes))
            return StepResult(step=STEP_COPY_LIMIT, ok=True)
        except Exception as e:
            logger.warning(f"Fleet: не удалось задать лимит ключу {remote_key_id} на {server.name}: {e}")
            return StepResult(step=STEP_COPY_LIMIT, ok=False, error=str(e))

    async def rewrite_record(
        self,
        key: AccessKey,
        server: Server,
        remote_key: RemoteAccessKey,
        carry_usage: bool = True,
    ) -> StepResult:
        """
        Шаг 3: перенаправить запись на новый удалённый ключ (один commit).

        carry_usage: накопленный трафик переносится в usage_offset,
        новый удалённый ключ начинает с нуля.
        """
        key.server_id = server.id
        key.server = server
        key.outline_key_id = remote_key.id
        key.access_url = remote_key.access_url
        key.password = remote_key.password
        key.port = remote_key.port
        key.method = remote_key.method or key.method
        if carry_usage:
            key.usage_offset = key.used_bytes or 0

        await self.session.commit()
        return StepResult(step=STEP_REWRITE, ok=True)

    async def delete_from_source(self, server: Server, remote_key_id: str) -> StepResult:
        """Шаг 4: удалить старый ключ. Ошибка не откатывает шаг 3"""
        try:
            await self.client_factory(server).delete_access_key(remote_key_id)
            return StepResult(step=STEP_DELETE_SOURCE, ok=True)
        except Exception as e:
            logger.warning(
                f"Fleet: не удалось удалить старый ключ {remote_key_id} с сервера \"{server.name}\": {e}"
            )
            return StepResult(step=STEP_DELETE_SOURCE, ok=False, error=str(e))

    # === КОМПОЗИЦИИ ===

    async def move_key(
        self,
        key: AccessKey,
        target_server: Server,
        delete_from_source: bool = True,
        remote_name: Optional[str] = None,
    ) -> MoveOutcome:
        """
        Перенести (или перевыпустить на том же сервере) ключ.

        Используется миграцией и ротацией. Ошибка create пробрасывается,
        ошибки copy limit / delete собираются в outcome.steps.
        """
        source_server = key.server
        old_remote_id = key.outline_key_id

        remote_key = await self.create_on_server(target_server, remote_name or key.name, key.method)
        outcome = MoveOutcome(key=key, remote_key=remote_key)
        outcome.steps.append(StepResult(step=STEP_CREATE, ok=True))

        outcome.steps.append(await self.copy_limit(target_server, remote_key.id, key.data_limit_bytes))
        outcome.steps.append(await self.rewrite_record(key, target_server, remote_key, carry_usage=True))

        if delete_from_source and source_server is not None:
            outcome.steps.append(await self.delete_from_source(source_server, old_remote_id))
        else:
            outcome.steps.append(StepResult(step=STEP_DELETE_SOURCE, ok=True, skipped=True))

        return outcome

    async def provision_key(
        self,
        server: Server,
        name: str,
        method: Optional[str] = None,
        data_limit_bytes: Optional[int] = None,
        dynamic_key_id: Optional[int] = None,
        is_self_managed: bool = False,
        prefix: Optional[str] = None,
    ) -> MoveOutcome:
        """
        Создать новый ключ без источника (create + copy limit + новая запись).
        """
        remote_key = await self.create_on_server(server, name, method)

        key = AccessKey(
            outline_key_id=remote_key.id,
            name=name,
            server_id=server.id,
            access_url=remote_key.access_url,
            password=remote_key.password,
            port=remote_key.port,
            method=remote_key.method or method,
            prefix=prefix,
            data_limit_bytes=data_limit_bytes,
            expiration_type=ExpirationType.NEVER,
            status=KeyStatus.ACTIVE,
            subscription_token=generate_token(self.config.token_length),
            dynamic_key_id=dynamic_key_id,
            is_self_managed=is_self_managed,
            used_bytes=0,
            usage_offset=0,
        )
        key.server = server

        outcome = MoveOutcome(key=key, remote_key=remote_key)
        outcome.steps.append(StepResult(step=STEP_CREATE, ok=True))
        outcome.steps.append(await self.copy_limit(server, remote_key.id, data_limit_bytes))

        self.session.add(key)
        await self.session.commit()
        outcome.steps.append(StepResult(step=STEP_REWRITE, ok=True))

        logger.info(f"Fleet: создан ключ \"{name}\" на сервере \"{server.name}\" (remote {remote_key.id})")
        return outcome
