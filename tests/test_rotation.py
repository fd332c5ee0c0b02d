"""
Тесты RotationService — ротация ключей динамических ключей
"""
from datetime import datetime, timedelta

import pytest

from database.models import KeyStatus, RotationInterval, utcnow
from services.rotation_service import RotationService, calculate_next_rotation
from services.sync_lock import SyncBusy


class TestCalculateNextRotation:
    """Дата следующей ротации"""

    def test_intervals(self):
        base = datetime(2024, 1, 10, 12, 0)
        assert calculate_next_rotation(RotationInterval.DAILY, base) == datetime(2024, 1, 11, 12, 0)
        assert calculate_next_rotation(RotationInterval.WEEKLY, base) == datetime(2024, 1, 17, 12, 0)
        assert calculate_next_rotation(RotationInterval.BIWEEKLY, base) == datetime(2024, 1, 24, 12, 0)
        assert calculate_next_rotation(RotationInterval.MONTHLY, base) == datetime(2024, 2, 10, 12, 0)

    def test_month_end(self):
        """31 января + месяц -> последний день февраля"""
        assert calculate_next_rotation("MONTHLY", datetime(2024, 1, 31)) == datetime(2024, 2, 29)

    def test_never_and_unknown(self):
        assert calculate_next_rotation(RotationInterval.NEVER, datetime(2024, 1, 1)) is None
        assert calculate_next_rotation("HOURLY", datetime(2024, 1, 1)) is None


async def rotating_pool(make, server, name="rot", **fields):
    values = dict(rotation_enabled=True, rotation_interval=RotationInterval.WEEKLY)
    values.update(fields)
    dak = await make.dynamic_key(name, **values)
    return dak


class TestRotateDynamicKey:
    """Ротация одного пула"""

    @pytest.mark.asyncio
    async def test_keys_replaced_in_place(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server)
        key = await make.key(server, dynamic_key_id=dak.id, used_bytes=3000, data_limit_bytes=10000)
        old_remote_id = key.outline_key_id
        old_url = key.access_url
        token = key.subscription_token

        rotation = await RotationService(session, fleet, lock).rotate_dynamic_key(dak.id)

        assert rotation.success is True
        assert (rotation.rotated_keys, rotation.total_keys) == (1, 1)

        await session.refresh(key)
        assert key.server_id == server.id
        assert key.subscription_token == token
        assert key.outline_key_id != old_remote_id
        assert key.access_url != old_url
        assert key.usage_offset == 3000
        assert fleet.deleted == [(server.id, old_remote_id)]
        assert fleet.created[0][1].name.startswith("rot-rotated-")

        await session.refresh(dak)
        assert dak.rotation_count == 1
        assert dak.last_rotated_at is not None
        assert dak.next_rotation_at == dak.last_rotated_at + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_only_active_keys(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server)
        await make.key(server, dynamic_key_id=dak.id)
        await make.key(server, dynamic_key_id=dak.id, status=KeyStatus.DISABLED)

        rotation = await RotationService(session, fleet, lock).rotate_dynamic_key(dak.id)
        assert rotation.total_keys == 1

    @pytest.mark.asyncio
    async def test_empty_pool_still_rotated(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server)

        rotation = await RotationService(session, fleet, lock).rotate_dynamic_key(dak.id)

        assert rotation.success is True
        await session.refresh(dak)
        assert dak.rotation_count == 1
        assert dak.next_rotation_at is not None

    @pytest.mark.asyncio
    async def test_failed_key_does_not_stop_others(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server)
        first = await make.key(server, dynamic_key_id=dak.id)
        second = await make.key(server, dynamic_key_id=dak.id)
        first_remote = first.outline_key_id
        fleet.fail_create_calls.add(1)

        rotation = await RotationService(session, fleet, lock).rotate_dynamic_key(dak.id)

        assert (rotation.rotated_keys, rotation.total_keys) == (1, 2)
        failed = [r for r in rotation.results if not r.success]
        assert [(r.key_id, r.key_name) for r in failed] == [(first.id, first.name)]
        assert "HTTP 500" in failed[0].error
        assert [r.key_id for r in rotation.results if r.success] == [second.id]
        await session.refresh(first)
        assert first.outline_key_id == first_remote
        assert second.outline_key_id == fleet.created[0][1].id

    @pytest.mark.asyncio
    async def test_unknown_dynamic_key(self, session, fleet, lock):
        rotation = await RotationService(session, fleet, lock).rotate_dynamic_key(12345)
        assert rotation.success is False


class TestCheckKeyRotations:
    """Плановая проверка"""

    @pytest.mark.asyncio
    async def test_key_failure_reported(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server, "partial")
        key = await make.key(server, name="broken", dynamic_key_id=dak.id)
        fleet.fail_create_servers.add(server.id)

        result = await RotationService(session, fleet, lock).check_key_rotations()

        assert result.rotated == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"partial/{key.name}:")

    @pytest.mark.asyncio
    async def test_due_selection(self, session, fleet, lock, make, server):
        now = utcnow()
        never_rotated = await rotating_pool(make, server, "fresh")
        overdue = await rotating_pool(make, server, "overdue", next_rotation_at=now - timedelta(minutes=1),
                                      last_rotated_at=now - timedelta(days=7))
        await rotating_pool(make, server, "later", next_rotation_at=now + timedelta(days=1),
                            last_rotated_at=now - timedelta(days=6))
        await rotating_pool(make, server, "off", rotation_enabled=False)
        await rotating_pool(make, server, "never", rotation_interval=RotationInterval.NEVER)
        await rotating_pool(make, server, "disabled", status=KeyStatus.DISABLED)

        result = await RotationService(session, fleet, lock).check_key_rotations()

        assert result.rotated == 2
        assert result.errors == []
        # "later" плюс два только что ротированных (их next_rotation_at теперь в будущем)
        assert result.skipped == 3

        for dak in (never_rotated, overdue):
            await session.refresh(dak)
            assert dak.rotation_count == 1

    @pytest.mark.asyncio
    async def test_skipped_when_lock_busy(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server)
        await lock.try_acquire("migration-1-2")

        result = await RotationService(session, fleet, lock).check_key_rotations()

        assert result.rotated == 0
        assert result.errors
        await session.refresh(dak)
        assert dak.rotation_count == 0

    @pytest.mark.asyncio
    async def test_manual_rotation_busy(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server)
        await lock.try_acquire("usage-sync")

        with pytest.raises(SyncBusy):
            await RotationService(session, fleet, lock).trigger_manual_rotation(dak.id)

    @pytest.mark.asyncio
    async def test_manual_rotation(self, session, fleet, lock, make, server):
        dak = await rotating_pool(make, server, rotation_enabled=False)
        await make.key(server, dynamic_key_id=dak.id)

        rotation = await RotationService(session, fleet, lock).trigger_manual_rotation(dak.id)

        assert rotation.success is True
        assert rotation.rotated_keys == 1
