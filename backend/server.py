from token_wallet.routes import tokens_router
from token_wallet.errors import register_error_handlers
from token_wallet.db_init import ensure_indexes
from database import db, client, check_db_connection
from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import os
import logging

# Create the main app
app = FastAPI(title="Token Wallet - Usage Tokens & Purchases")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

logger = logging.getLogger(__name__)


@api_router.get("/health")
async def health():
    return {"status": "ok"}


# Include all routers
# Token wallet: balance, consumption, purchases, Razorpay webhook
api_router.include_router(tokens_router)

app.include_router(api_router)

register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Collections and unique indexes backing the wallet's idempotency
    await db.users.create_index("id", unique=True)
    for line in await ensure_indexes(db):
        logger.info(line)


@app.on_event("shutdown")
async def shutdown_db_client():
    # Close MongoDB client
    client.close()
