"""
Pytest fixtures для тестов Outline флота
"""
import random

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from database.models import (
    Base, Server, Tag, AccessKey, DynamicAccessKey,
    DakType, KeyStatus, LoadBalancerAlgorithm,
)
from services.sync_lock import InMemoryLockService
from vpn.access_url import build_access_url
from vpn.outline_client import OutlineApiError, RemoteAccessKey


class FakeOutlineClient:
    """Клиент Outline, работающий с FakeOutlineFleet вместо HTTP"""

    def __init__(self, fleet: "FakeOutlineFleet", server):
        self.fleet = fleet
        self.server = server

    async def get_server_info(self) -> dict:
        if self.server.id in self.fleet.unreachable:
            raise OutlineApiError("Connection timeout", status=0)
        return {"name": self.server.name}

    async def get_transfer_metrics(self) -> dict[str, int]:
        if self.server.id in self.fleet.fail_metrics:
            raise OutlineApiError("Connection timeout", status=0)
        return dict(self.fleet.metrics.get(self.server.id, {}))

    async def create_access_key(self, name: str, method=None) -> RemoteAccessKey:
        self.fleet.create_calls += 1
        if self.fleet.create_calls in self.fleet.fail_create_calls or self.server.id in self.fleet.fail_create_servers:
            raise OutlineApiError("Outline API error: HTTP 500", status=500)

        self.fleet.next_id += 1
        key_id = str(self.fleet.next_id)
        method = method or "chacha20-ietf-poly1305"
        password = f"secret-{key_id}"
        port = 20000 + self.fleet.next_id
        key = RemoteAccessKey(
            id=key_id,
            access_url=build_access_url(method, password, self.server.hostname, port, name),
            password=password,
            port=port,
            method=method,
            name=name,
        )
        self.fleet.created.append((self.server.id, key))
        return key

    async def delete_access_key(self, key_id: str) -> None:
        if self.fleet.fail_delete:
            raise OutlineApiError("Outline API error: HTTP 404", status=404)
        self.fleet.deleted.append((self.server.id, key_id))

    async def set_access_key_data_limit(self, key_id: str, limit_bytes: int) -> None:
        if self.fleet.fail_limit:
            raise OutlineApiError("Outline API error: HTTP 500", status=500)
        self.fleet.limits.append((self.server.id, key_id, limit_bytes))

    async def remove_access_key_data_limit(self, key_id: str) -> None:
        self.fleet.limits.append((self.server.id, key_id, None))


class FakeOutlineFleet:
    """Состояние всех фейковых серверов + фабрика клиентов"""

    def __init__(self):
        self.next_id = 100
        self.create_calls = 0
        self.created: list[tuple[int, RemoteAccessKey]] = []
        self.deleted: list[tuple[int, str]] = []
        self.limits: list[tuple] = []
        self.metrics: dict[int, dict[str, int]] = {}

        # Инъекция ошибок
        self.fail_create_calls: set[int] = set()   # номера вызовов create (с 1)
        self.fail_create_servers: set[int] = set()
        self.fail_metrics: set[int] = set()
        self.unreachable: set[int] = set()
        self.fail_delete = False
        self.fail_limit = False

    def __call__(self, server) -> FakeOutlineClient:
        return FakeOutlineClient(self, server)


@pytest.fixture
async def async_engine():
    """In-memory SQLite для тестов (одно соединение на все сессии)"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture
async def session(session_factory):
    """Async session для тестов"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fleet():
    return FakeOutlineFleet()


@pytest.fixture
def lock():
    return InMemoryLockService(timeout=300)


@pytest.fixture
def rng():
    return random.Random(42)


async def make_server(session, name: str, hostname: str = None, tags=(), is_active: bool = True) -> Server:
    server = Server(
        name=name,
        api_url=f"https://{name}.example.com:8443/secret",
        api_cert_sha256=f"cert-{name}",
        hostname=hostname or f"{name}.example.com",
        is_active=is_active,
        tags=list(tags),
    )
    session.add(server)
    await session.commit()
    return server


_key_counter = 0


async def make_key(session, server: Server, name: str = None, **fields) -> AccessKey:
    """Ключ на сервере с рабочим access URL"""
    global _key_counter
    _key_counter += 1
    n = _key_counter
    name = name or f"key-{n}"

    values = dict(
        outline_key_id=str(n),
        name=name,
        server_id=server.id,
        access_url=build_access_url("chacha20-ietf-poly1305", f"pw-{n}", server.hostname, 10000 + n, name),
        password=f"pw-{n}",
        port=10000 + n,
        method="chacha20-ietf-poly1305",
        status=KeyStatus.ACTIVE,
        subscription_token=f"key-token-{n}",
        used_bytes=0,
        usage_offset=0,
    )
    values.update(fields)

    key = AccessKey(**values)
    key.server = server
    session.add(key)
    await session.commit()
    return key


async def make_dynamic_key(session, name: str = "pool", tags=(), **fields) -> DynamicAccessKey:
    values = dict(
        name=name,
        type=DakType.MANUAL,
        dynamic_url=f"dak-{name}",
        load_balancer_algorithm=LoadBalancerAlgorithm.IP_HASH,
        status=KeyStatus.ACTIVE,
        used_bytes=0,
        server_tags=list(tags),
    )
    values.update(fields)

    dak = DynamicAccessKey(**values)
    session.add(dak)
    await session.commit()
    return dak


class Factory:
    """Создание записей в тестовой сессии"""

    def __init__(self, session):
        self.session = session

    async def server(self, name: str, **kwargs) -> Server:
        return await make_server(self.session, name, **kwargs)

    async def key(self, server: Server, name: str = None, **fields) -> AccessKey:
        return await make_key(self.session, server, name, **fields)

    async def dynamic_key(self, name: str = "pool", **fields) -> DynamicAccessKey:
        return await make_dynamic_key(self.session, name, **fields)


@pytest.fixture
def make(session):
    return Factory(session)


@pytest.fixture
async def server(session):
    """Активный сервер"""
    return await make_server(session, "alpha")


@pytest.fixture
async def second_server(session):
    return await make_server(session, "beta")


@pytest.fixture
async def tag(session):
    tag = Tag(name="eu")
    session.add(tag)
    await session.commit()
    return tag
