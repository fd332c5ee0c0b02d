"""
Ручная ротация ключей динамического ключа.

Использование:
    python scripts/rotate_key.py DAK_ID
    python scripts/rotate_key.py --due     # все пулы, которым пора
"""
import argparse
import asyncio

from database import async_session, init_db
from services.rotation_service import RotationService
from services.sync_lock import SyncBusy


async def rotate(args):
    await init_db()

    async with async_session() as session:
        service = RotationService(session)

        if args.due:
            result = await service.check_key_rotations()
            print(f"📊 Ротировано {result.rotated}, пропущено {result.skipped}")
            for error in result.errors:
                print(f"❌ {error}")
            return

        try:
            rotation = await service.trigger_manual_rotation(args.dak_id)
        except SyncBusy as e:
            print(f"❌ {e}")
            return

    if rotation.success:
        print(f"✅ Ротировано {rotation.rotated_keys}/{rotation.total_keys} ключей")
        for item in rotation.results:
            if not item.success:
                print(f"   ❌ #{item.key_id} {item.key_name}: {item.error}")
    else:
        print(f"❌ {rotation.error}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Ротация ключей динамического ключа")
    parser.add_argument("dak_id", type=int, nargs="?")
    parser.add_argument("--due", action="store_true", help="ротировать все пулы, которым подошёл срок")
    args = parser.parse_args()
    if args.dak_id is None and not args.due:
        parser.error("укажите DAK_ID или --due")
    asyncio.run(rotate(args))
