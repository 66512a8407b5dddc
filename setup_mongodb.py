"""
MongoDB Setup Script
Tests connection and initializes the queue, metrics, projection and
event-store indexes.
"""
import asyncio

from crm_sync.config import settings
from crm_sync.models.entities import ENTITY_ANCHORS, EVENT_STORES
from crm_sync.repositories import db_manager

CORE_COLLECTIONS = ("webhook_queue", "webhook_metrics", "webhook_discovery")


async def setup_mongodb():
    """Initialize the crm-sync database with collections and indexes."""
    print("🔄 Connecting to MongoDB...")
    print(f"   Database: {settings.mongodb_database}")
    print(f"   Transactions: {'enabled' if settings.mongodb_use_transactions else 'disabled'}")
    print()

    try:
        await db_manager.connect()
        await db_manager.client.admin.command("ping")
        print("✅ Connection successful!")
        print()

        db = db_manager.database

        existing_collections = await db.list_collection_names()
        print(f"📦 Existing collections: {existing_collections or 'None'}")
        print()

        print("🔨 Creating indexes...")
        await db_manager.create_indexes()
        print("✅ Indexes created successfully!")
        print()

        print("📊 Verifying indexes:")
        total = 0
        for name in (*CORE_COLLECTIONS, *ENTITY_ANCHORS, *EVENT_STORES):
            indexes = await db[name].index_information()
            total += len(indexes)
            print(f"   {name}: {len(indexes)} indexes")
            for idx_name in indexes:
                print(f"      - {idx_name}")

        print()
        print("🎉 MongoDB setup complete!")
        print(f"   ✅ Indexes: {total} total")
        print()

    except Exception as e:
        print(f"❌ Error: {e}")
        print()
        print("💡 Troubleshooting:")
        print("   1. Check MONGODB_URI and that the server is reachable")
        print("   2. Transactions need a replica set; set MONGODB_USE_TRANSACTIONS=false for a standalone server")
        raise

    finally:
        await db_manager.disconnect()
        print("👋 Disconnected from MongoDB")


if __name__ == "__main__":
    asyncio.run(setup_mongodb())
