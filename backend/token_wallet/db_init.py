"""
Token Wallet Database Initialization Script

Rules:
1. Environment Guard - requires APP_ENV and TOKEN_WALLET_INIT_CONFIRM=YES for production
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Lazy ledger creation - user_tokens rows are created on first use, not here
5. Safe index creation - handles "index already exists" gracefully
6. Dry-run mode - --dry-run prints what it would do
7. Version stamp - tracks init version

Usage:
    CLI one-off: python -m token_wallet.db_init
    With dry-run: python -m token_wallet.db_init --dry-run
    In production: APP_ENV=production TOKEN_WALLET_INIT_CONFIRM=YES python -m token_wallet.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "user_tokens",
    "token_transactions",
    "pending_token_purchases",
    "purchase_history",
    "receipt_counters",
    "token_wallet_meta"  # For version tracking
]

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # user_tokens: one ledger row per user
    ("user_tokens", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),

    # token_transactions
    ("token_transactions", [("user_id", 1), ("timestamp", -1)], {"name": "idx_user_timestamp"}),
    ("token_transactions", [("request_id", 1)], {"name": "idx_request_id"}),

    # pending_token_purchases
    ("pending_token_purchases", [("order_id", 1)], {"unique": True, "name": "idx_order_id_unique"}),
    ("pending_token_purchases", [("user_id", 1), ("created_at", -1)], {"name": "idx_user_created"}),
    ("pending_token_purchases", [("status", 1)], {"name": "idx_status"}),

    # purchase_history
    ("purchase_history", [("order_id", 1)], {"unique": True, "name": "idx_history_order_id_unique"}),
    ("purchase_history", [("receipt_number", 1)], {"unique": True, "name": "idx_receipt_number_unique"}),
    ("purchase_history", [("user_id", 1), ("purchased_at", -1)], {"name": "idx_user_purchased_at"}),

    # receipt_counters
    ("receipt_counters", [("year_month", 1)], {"unique": True, "name": "idx_year_month_unique"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("TOKEN_WALLET_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: TOKEN_WALLET_INIT_CONFIRM=YES\n"
                f"Current value: TOKEN_WALLET_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()
    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.token_wallet_meta.update_one(
        {"_id": "token_wallet_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """
    Create the wallet collections and indexes that are missing.

    Called on app startup and by the CLI. The unique indexes back the
    idempotency guarantees (one ledger per user, one purchase and one
    history row per order, unique receipt numbers).
    """
    results = []
    for collection_name in REQUIRED_COLLECTIONS:
        results.append(await create_collection_if_not_exists(db, collection_name, dry_run))
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))
    results.append(await update_version_stamp(db, dry_run))
    return results


async def run_init(dry_run: bool = False):
    """Run the database initialization."""
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    for line in await ensure_indexes(db, dry_run):
        logger.info(line)

    client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Token wallet DB init completed")
    logger.info("=" * 50)


def main():
    """Main entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Token Wallet Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m token_wallet.db_init

    # Dry run (no changes)
    python -m token_wallet.db_init --dry-run

    # Production
    APP_ENV=production TOKEN_WALLET_INIT_CONFIRM=YES python -m token_wallet.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
