"""
Resolver токенов подписки.

Использование:
    async with async_session() as session:
        resolver = SubscriptionResolver(session)
        resolved = await resolver.resolve(token, client_ip)

Токен сначала ищется среди динамических ключей, затем среди обычных.
"""
import logging
import random
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AccessKey, DakType, DynamicAccessKey, LoadBalancerAlgorithm
from database.repository import FleetRepository
from vpn import load_balancer
from vpn.access_url import AccessUrl, OpaqueAccessUrl, ParsedAccessUrl, parse_access_url
from vpn.outline_client import OutlineClientFactory

from .errors import InternalError, NotFound, ServiceUnavailable
from .lifecycle import enforce_lifecycle
from .provision_service import SelfManagedProvisioner

logger = logging.getLogger(__name__)


@dataclass
class ResolvedSubscription:
    """Выбранный ключ и готовые данные для ответа"""
    key: AccessKey
    access_url: AccessUrl
    prefix: Optional[str] = None
    dynamic_key: Optional[DynamicAccessKey] = None

    @property
    def is_parsed(self) -> bool:
        return isinstance(self.access_url, ParsedAccessUrl)

    def to_payload(self) -> dict:
        """JSON {server, server_port, password, method[, prefix]}"""
        if not isinstance(self.access_url, ParsedAccessUrl):
            raise ValueError("opaque access URL has no JSON form")
        return self.access_url.to_payload(self.prefix)

    @property
    def raw_url(self) -> str:
        if isinstance(self.access_url, OpaqueAccessUrl):
            return self.access_url.raw
        return self.key.access_url or ""


def render_credential(key: AccessKey, prefix: Optional[str] = None, dynamic_key: Optional[DynamicAccessKey] = None) -> ResolvedSubscription:
    """
    Подготовить ключ к выдаче.

    Нет access URL — собираем из полей ключа; неразбираемый URL отдаётся как есть.
    """
    if key.access_url:
        access_url = parse_access_url(key.access_url)
    elif key.password and key.port and key.method and key.server is not None and key.server.hostname:
        access_url = ParsedAccessUrl(
            method=key.method,
            password=key.password,
            host=key.server.hostname,
            port=key.port,
            tag=key.name,
        )
    else:
        logger.error(f"VPN sub: у ключа id={key.id} нет параметров подключения")
        raise InternalError("Access URL not available")

    return ResolvedSubscription(
        key=key,
        access_url=access_url,
        prefix=prefix if prefix is not None else key.prefix,
        dynamic_key=dynamic_key,
    )


class SubscriptionResolver:
    """Разрешение токена в конкретный ключ"""

    def __init__(
        self,
        session: AsyncSession,
        client_factory: Optional[OutlineClientFactory] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.repo = FleetRepository(session)
        self.rng = rng or random.Random()
        self.provisioner = SelfManagedProvisioner(session, client_factory, self.rng)

    async def resolve(self, token: str, client_ip: str = "127.0.0.1") -> ResolvedSubscription:
        """
        Найти и проверить ключ по токену.

        Raises:
            NotFound: токен неизвестен
            Gone: ключ отключён, истёк или исчерпал квоту
            ServiceUnavailable: в пуле нет подходящего ключа / сервер недоступен
        """
        dak = await self.repo.get_dynamic_key_by_token(token)
        if dak is not None:
            return await self._resolve_dynamic(dak, client_ip)

        key = await self.repo.get_access_key_by_token(token)
        if key is None:
            raise NotFound()

        await enforce_lifecycle(self.repo, key)
        return render_credential(key)

    async def _resolve_dynamic(self, dak: DynamicAccessKey, client_ip: str) -> ResolvedSubscription:
        await enforce_lifecycle(self.repo, dak)

        if dak.type == DakType.SELF_MANAGED:
            key = await self.provisioner.get_or_create(dak)
        else:
            key = await self.select_pool_member(dak, client_ip)

        logger.debug(f"VPN sub: пул \"{dak.name}\" -> ключ id={key.id} на сервере {key.server_id}")
        return render_credential(key, prefix=dak.prefix or key.prefix, dynamic_key=dak)

    async def select_pool_member(self, dak: DynamicAccessKey, client_ip: str) -> AccessKey:
        """Выбор ключа MANUAL пула балансировщиком"""
        candidates = await self.repo.list_pool_members(dak)
        if not candidates:
            logger.warning(f"VPN sub: в пуле \"{dak.name}\" нет активных ключей")
            raise ServiceUnavailable("No eligible credential")

        stats = ()
        if load_balancer.normalize_algorithm(dak.load_balancer_algorithm) == LoadBalancerAlgorithm.LEAST_LOAD.value:
            stats = (await self.repo.server_load_stats({c.server_id for c in candidates})).values()

        expected_cursor = dak.last_selected_key_index
        selection = load_balancer.select_candidate(
            dak.load_balancer_algorithm,
            candidates,
            client_ip=client_ip,
            last_index=expected_cursor,
            stats=stats,
            rng=self.rng,
        )

        if selection.cursor is not None:
            applied = await self.repo.update_round_robin_cursor(dak, expected_cursor, selection.cursor)
            if not applied:
                logger.info(f"VPN sub: курсор round-robin пула \"{dak.name}\" сдвинут параллельным запросом")

        return candidates[selection.index]
