from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import get_db, get_store

# ENV
from config.env import ENV, LOG_LEVEL, STORE_BACKEND, CORS_ALLOWED_ORIGINS, validate_production_env

# ROUTES
from routes.orders import router as orders_router
from routes.payments import router as payments_router
from routes.admin import router as admin_router

# WORKERS
from workers.payment_expiry_worker import payment_expiry_worker

from utils.indexes import ensure_indexes

logging.basicConfig(
    level=getattr(logging, (LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV=%s STORE_BACKEND=%s", ENV, STORE_BACKEND)

app = FastAPI(
    title="Marketplace Escrow API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(admin_router)

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    await get_store().ping()
    return {"status": f"{STORE_BACKEND} connected"}

# -----------------------------
# STARTUP (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def start_background_workers():
    if STORE_BACKEND == "mongo":
        await ensure_indexes(get_db())
    asyncio.create_task(payment_expiry_worker())
