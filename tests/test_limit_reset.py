"""
Тесты периодического сброса квот
"""
from datetime import datetime, timedelta

import pytest

from database.models import DataLimitResetStrategy, KeyStatus
from services.limit_reset_service import LimitResetService, is_reset_due
from services.usage_sync_service import UsageSyncService

GB = 1024 ** 3
NOW = datetime(2024, 3, 1, 12, 0)


class TestIsResetDue:
    """Наступил ли срок сброса"""

    def test_intervals(self):
        assert is_reset_due(DataLimitResetStrategy.DAILY, NOW - timedelta(days=1), NOW) is True
        assert is_reset_due(DataLimitResetStrategy.DAILY, NOW - timedelta(hours=23), NOW) is False
        assert is_reset_due(DataLimitResetStrategy.WEEKLY, NOW - timedelta(days=6), NOW) is False
        assert is_reset_due(DataLimitResetStrategy.MONTHLY, datetime(2024, 2, 1, 12, 0), NOW) is True
        assert is_reset_due(DataLimitResetStrategy.MONTHLY, datetime(2024, 2, 2), NOW) is False

    def test_never_reset_before(self):
        assert is_reset_due(DataLimitResetStrategy.WEEKLY, None, NOW) is True

    def test_never_strategy(self):
        assert is_reset_due(DataLimitResetStrategy.NEVER, None, NOW) is False
        assert is_reset_due("HOURLY", None, NOW) is False


class TestLimitReset:
    """Сброс квот по расписанию"""

    @pytest.mark.asyncio
    async def test_depleted_key_reactivated(self, session, fleet, lock, make, server):
        """Исчерпанный ключ после сброса снова активен и считает трафик с нуля"""
        key = await make.key(
            server,
            data_limit_bytes=5 * GB,
            used_bytes=5 * GB,
            status=KeyStatus.DEPLETED,
            data_limit_reset_strategy=DataLimitResetStrategy.MONTHLY,
            last_data_limit_reset=datetime(2024, 1, 31),
        )
        fleet.metrics[server.id] = {key.outline_key_id: 5 * GB}

        result = await LimitResetService(session, fleet, lock).check_periodic_limits(NOW)

        assert (result.keys_reset, result.keys_reactivated) == (1, 1)
        assert result.errors == []
        await session.refresh(key)
        assert key.status == KeyStatus.ACTIVE
        assert key.used_bytes == 0
        assert key.usage_offset == -5 * GB
        assert key.last_data_limit_reset == NOW
        assert fleet.limits == [(server.id, key.outline_key_id, 10 * GB)]

        fleet.metrics[server.id] = {key.outline_key_id: 5 * GB + 100}
        await UsageSyncService(session, fleet, lock).sync_all()
        await session.refresh(key)
        assert key.used_bytes == 100

    @pytest.mark.asyncio
    async def test_not_due_untouched(self, session, fleet, lock, make, server):
        recent = await make.key(
            server,
            used_bytes=GB,
            data_limit_reset_strategy=DataLimitResetStrategy.MONTHLY,
            last_data_limit_reset=NOW - timedelta(days=3),
        )
        never = await make.key(server, used_bytes=GB)
        disabled = await make.key(
            server,
            used_bytes=GB,
            status=KeyStatus.DISABLED,
            data_limit_reset_strategy=DataLimitResetStrategy.DAILY,
        )

        result = await LimitResetService(session, fleet, lock).check_periodic_limits(NOW)

        assert result.keys_reset == 0
        for key in (recent, never, disabled):
            await session.refresh(key)
            assert key.used_bytes == GB
        assert fleet.limits == []

    @pytest.mark.asyncio
    async def test_remote_limit_removed_without_quota(self, session, fleet, lock, make, server):
        key = await make.key(server, data_limit_reset_strategy=DataLimitResetStrategy.DAILY)

        await LimitResetService(session, fleet, lock).check_periodic_limits(NOW)

        assert fleet.limits == [(server.id, key.outline_key_id, None)]

    @pytest.mark.asyncio
    async def test_failing_server_skipped(self, session, fleet, lock, make, server, second_server):
        broken = await make.key(server, used_bytes=GB, data_limit_reset_strategy=DataLimitResetStrategy.DAILY)
        healthy = await make.key(second_server, used_bytes=GB, data_limit_reset_strategy=DataLimitResetStrategy.DAILY)
        fleet.fail_metrics.add(server.id)

        result = await LimitResetService(session, fleet, lock).check_periodic_limits(NOW)

        assert result.keys_reset == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("alpha")
        await session.refresh(broken)
        await session.refresh(healthy)
        assert broken.used_bytes == GB
        assert healthy.used_bytes == 0

    @pytest.mark.asyncio
    async def test_limit_failure_reported(self, session, fleet, lock, make, server):
        """Лимит на сервере не обновился: сброс в БД остаётся, ошибка в отчёте"""
        key = await make.key(
            server, used_bytes=GB, data_limit_bytes=GB, data_limit_reset_strategy=DataLimitResetStrategy.DAILY
        )
        fleet.fail_limit = True

        result = await LimitResetService(session, fleet, lock).check_periodic_limits(NOW)

        assert result.keys_reset == 1
        assert result.errors and result.errors[0].startswith(f"alpha/{key.name}")
        await session.refresh(key)
        assert key.used_bytes == 0

    @pytest.mark.asyncio
    async def test_skipped_when_busy(self, session, fleet, lock, make, server):
        key = await make.key(server, used_bytes=GB, data_limit_reset_strategy=DataLimitResetStrategy.DAILY)
        await lock.try_acquire("usage-sync")

        result = await LimitResetService(session, fleet, lock).check_periodic_limits(NOW)

        assert result.keys_reset == 0
        assert result.errors
        await session.refresh(key)
        assert key.used_bytes == GB
