"""
Блокировка массовых операций (синхронизация трафика, миграция, ротация).

Одна блокировка на процесс: пока одна операция меняет много записей,
другие получают отказ. Если владелец упал и не отпустил блокировку,
через lock_timeout она забирается принудительно.

InMemoryLockService работает только внутри одного процесса. Для нескольких
инстансов используется StoreLeaseLockService (аренда в таблице БД) —
контракт у них одинаковый.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.models import OperationLease, utcnow
from vpn.config import get_config

logger = logging.getLogger(__name__)

LEASE_NAME = "fleet-sync"
BUSY_MESSAGE = "Another sync operation is in progress"


class SyncBusy(Exception):
    """Другая массовая операция уже выполняется"""


@dataclass
class LockStatus:
    is_locked: bool
    locked_by: Optional[str] = None
    locked_for: Optional[float] = None  # секунд


@dataclass
class LockedRun:
    """Результат with_sync_lock"""
    success: bool
    result: Any = None
    error: Optional[str] = None


class LockService(Protocol):
    async def try_acquire(self, operation_id: str, ttl: Optional[float] = None) -> bool: ...

    async def release(self, operation_id: str) -> bool: ...

    async def status(self) -> LockStatus: ...


class InMemoryLockService:
    """Блокировка в памяти процесса"""

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout if timeout is not None else get_config().lock_timeout
        self._clock = clock
        self._locked_by: Optional[str] = None
        self._locked_at: Optional[float] = None
        self._ttl: Optional[float] = None

    async def try_acquire(self, operation_id: str, ttl: Optional[float] = None) -> bool:
        now = self._clock()

        if self._locked_by is not None and self._locked_at is not None:
            age = now - self._locked_at
            if age > (self._ttl or self.timeout):
                logger.warning(
                    f"Sync lock: блокировка {self._locked_by} висит {age:.0f}s, забираем принудительно"
                )
                self._clear()

        if self._locked_by is not None:
            logger.info(f"Sync lock: {operation_id} отклонён, занято {self._locked_by}")
            return False

        self._locked_by = operation_id
        self._locked_at = now
        self._ttl = ttl
        return True

    async def release(self, operation_id: str) -> bool:
        """Отпустить блокировку (только владелец)"""
        if self._locked_by is not None and self._locked_by != operation_id:
            return False
        self._clear()
        return True

    async def status(self) -> LockStatus:
        if self._locked_by is None:
            return LockStatus(is_locked=False)
        return LockStatus(
            is_locked=True,
            locked_by=self._locked_by,
            locked_for=self._clock() - self._locked_at,
        )

    def _clear(self) -> None:
        self._locked_by = None
        self._locked_at = None
        self._ttl = None


class StoreLeaseLockService:
    """Аренда блокировки в таблице operation_leases"""

    def __init__(self, session_factory: async_sessionmaker, timeout: Optional[float] = None, name: str = LEASE_NAME):
        self.session_factory = session_factory
        self.timeout = timeout if timeout is not None else get_config().lock_timeout
        self.name = name

    async def try_acquire(self, operation_id: str, ttl: Optional[float] = None) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl or self.timeout)

        async with self.session_factory() as session:
            # Забираем просроченную аренду
            result = await session.execute(
                update(OperationLease)
                .where(OperationLease.name == self.name, OperationLease.expires_at < now)
                .values(holder=operation_id, acquired_at=now, expires_at=expires_at)
            )
            if result.rowcount == 1:
                await session.commit()
                logger.warning(f"Sync lock: просроченная аренда {self.name} забрана {operation_id}")
                return True

            session.add(OperationLease(name=self.name, holder=operation_id, acquired_at=now, expires_at=expires_at))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Sync lock: {operation_id} отклонён, аренда {self.name} занята")
                return False
            return True

    async def release(self, operation_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(OperationLease).where(
                    OperationLease.name == self.name,
                    OperationLease.holder == operation_id,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def status(self) -> LockStatus:
        async with self.session_factory() as session:
            lease = await session.get(OperationLease, self.name)
            if lease is None:
                return LockStatus(is_locked=False)
            return LockStatus(
                is_locked=True,
                locked_by=lease.holder,
                locked_for=(utcnow() - lease.acquired_at).total_seconds(),
            )


async def with_sync_lock(
    lock: LockService,
    operation_id: str,
    fn: Callable[[], Awaitable[Any]],
    ttl: Optional[float] = None,
) -> LockedRun:
    """
    Выполнить fn под блокировкой.

    Блокировка отпускается в finally; ошибки fn пробрасываются.
    """
    if not await lock.try_acquire(operation_id, ttl):
        return LockedRun(success=False, error=BUSY_MESSAGE)

    try:
        result = await fn()
        return LockedRun(success=True, result=result)
    finally:
        await lock.release(operation_id)


# Глобальная блокировка процесса (ленивая инициализация)
_lock: Optional[LockService] = None


def get_sync_lock() -> LockService:
    global _lock
    if _lock is None:
        _lock = InMemoryLockService()
    return _lock


def set_sync_lock(lock: LockService) -> None:
    """Подменить реализацию (например, на StoreLeaseLockService)"""
    global _lock
    _lock = lock
