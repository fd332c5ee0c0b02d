"""
Автоматическое создание ключей для SELF_MANAGED пулов.

Если у пула уже есть активный автоматически созданный ключ — возвращаем его
(повторные запросы клиента не плодят ключи). Иначе выбираем сервер по
фильтру тегов и создаём ключ через FleetLifecycle.
"""
import logging
import random
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AccessKey, DynamicAccessKey, LoadBalancerAlgorithm, Server
from database.repository import FleetRepository
from vpn import load_balancer
from vpn.config import get_config
from vpn.outline_client import OutlineApiError, OutlineClientFactory

from .errors import ServiceUnavailable
from .fleet_service import FleetError, FleetLifecycle

logger = logging.getLogger(__name__)


class SelfManagedProvisioner:
    """Fetch-or-create ключа пула"""

    def __init__(
        self,
        session: AsyncSession,
        client_factory: Optional[OutlineClientFactory] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.repo = FleetRepository(session)
        self.fleet = FleetLifecycle(session, client_factory)
        self.config = get_config()
        self.rng = rng or random.Random()

    async def get_or_create(self, dak: DynamicAccessKey) -> AccessKey:
        """
        Вернуть рабочий ключ пула, при необходимости создать.

        Raises:
            ServiceUnavailable: нет подходящих серверов или сервер не ответил
        """
        existing = await self.repo.find_self_managed_member(dak.id, dak.tag_ids)
        if existing is not None and existing.access_url:
            return existing

        servers = await self.repo.list_eligible_servers(dak.tag_ids)
        if not servers:
            logger.warning(f"VPN sub: нет серверов для пула \"{dak.name}\" (теги: {dak.tag_ids})")
            raise ServiceUnavailable("No eligible server")

        server = await self.pick_server(servers, dak.load_balancer_algorithm)
        name = f"{dak.name}-{self.config.self_managed_suffix}"

        try:
            outcome = await self.fleet.provision_key(
                server,
                name=name,
                method=dak.method,
                data_limit_bytes=dak.data_limit_bytes,
                dynamic_key_id=dak.id,
                is_self_managed=True,
                prefix=dak.prefix,
            )
        except (OutlineApiError, FleetError) as e:
            logger.error(f"VPN sub: не удалось создать ключ для пула \"{dak.name}\" на \"{server.name}\": {e}")
            raise ServiceUnavailable("Provisioning failed, retry later")

        return outcome.key

    async def pick_server(self, servers: list[Server], algorithm) -> Server:
        """LEAST_LOAD при нескольких серверах, иначе случайный"""
        if len(servers) > 1 and load_balancer.normalize_algorithm(algorithm) == LoadBalancerAlgorithm.LEAST_LOAD.value:
            stats = await self.repo.server_load_stats([s.id for s in servers])
            loads = load_balancer.compute_server_loads(stats.values())
            best = load_balancer.select_least_loaded_server(loads, self.rng)
            by_id = {s.id: s for s in servers}
            if best is not None and best.server_id in by_id:
                return by_id[best.server_id]

        return self.rng.choice(servers)
