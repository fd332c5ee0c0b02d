"""
Перенос ключей с одного сервера на другой.

Использование:
    python scripts/migrate_keys.py SOURCE_ID TARGET_ID [--keys 1,2,3] [--keep-source] [--preview]
"""
import argparse
import asyncio

from database import async_session, init_db
from services.migration_service import MigrationService
from services.sync_lock import SyncBusy


async def migrate(args):
    await init_db()

    key_ids = [int(k) for k in args.keys.split(",") if k.strip()] if args.keys else []

    async with async_session() as session:
        service = MigrationService(session)

        if args.preview:
            preview = await service.get_migration_preview(args.source, args.target, key_ids)
            print(f"📦 {preview['source_server']['name']} -> {preview['target_server']['name']}")
            for key in preview["keys"]:
                print(f"   {key['id']:>5}  {key['name']}  [{key['status']}]  {key['used_bytes']} B")
            print(f"\n📊 Всего ключей: {preview['total_keys']}")
            if not preview["target_server"]["reachable"]:
                print("⚠️ Целевой сервер не отвечает")
            return

        try:
            result = await service.migrate_keys(
                args.source, args.target, key_ids, delete_from_source=not args.keep_source
            )
        except (SyncBusy, ValueError) as e:
            print(f"❌ {e}")
            return

    for item in result.results:
        if item.success:
            print(f"✅ {item.key_name} -> remote {item.new_outline_key_id}")
        else:
            print(f"❌ {item.key_name}: {item.error}")

    print(f"\n📊 Итого: перенесено {result.migrated}, ошибок {result.failed} из {result.total}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Миграция ключей между серверами")
    parser.add_argument("source", type=int)
    parser.add_argument("target", type=int)
    parser.add_argument("--keys", default="", help="ID ключей через запятую (по умолчанию все)")
    parser.add_argument("--keep-source", action="store_true", help="не удалять ключи с исходного сервера")
    parser.add_argument("--preview", action="store_true", help="только показать, что будет перенесено")
    asyncio.run(migrate(parser.parse_args()))
