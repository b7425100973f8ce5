import os
from typing import Dict
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Service modules read their settings at import time
load_dotenv()

from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter
import redis.asyncio as redis
from prometheus_fastapi_instrumentator import Instrumentator
from app.api.handlers import install_error_handlers
from app.api.routes import router
from app.db.database import init_db
from app.utils.logger import logger

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    r = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
    await FastAPILimiter.init(r)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database initialisation failed: %s", e)
    logger.info("Application starting up...")
    yield
    # Shutdown
    await r.close()
    logger.info("Application shutting down...")

app: FastAPI = FastAPI(
    title="Screenshot Search API",
    description="Screenshot processing pipeline and hybrid search.",
    version="1.0.0",
    lifespan=lifespan
)

Instrumentator().instrument(app).expose(app)

install_error_handlers(app)
app.include_router(router)

@app.get("/health")
async def health_check() -> Dict[str, str]:
    return {"status": "ok"}
