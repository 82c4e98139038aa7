"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Crée le schéma si DB_CREATE_ALL est actif (dev/sqlite).
- Initialise FastAPILimiter (Redis) avec options de test (fakeredis).
- Variables d'environnement supportées:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: désactive complètement (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: active un fallback local si l'init échoue
"""
import os
import logging
from redis import asyncio as aioredis
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from backend.config import DB_CREATE_ALL
from backend.infra.database import create_all

try:
    from fakeredis.aioredis import FakeRedis  # tests only
except ImportError:
    FakeRedis = None


async def _init_rate_limiter(app: FastAPI, logger: logging.Logger) -> None:
    use_fake = os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1"
    if use_fake:
        if not FakeRedis:
            raise RuntimeError("USE_FAKE_REDIS_FOR_TESTS=1 mais fakeredis n'est pas installé.")
        r = FakeRedis(decode_responses=True)
    else:
        redis_url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
        r = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    await FastAPILimiter.init(r)
    app.state.rate_limit_enabled = True
    logger.info("Rate limiting enabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Prépare la base puis configure le rate limiting.
    - En cas d'échec de Redis et sans fallback, le rate limiting est désactivé proprement.
    - Les logs indiquent l'état effectif (enabled/disabled) pour observabilité.
    """
    logger = logging.getLogger("uvicorn.error")

    if DB_CREATE_ALL:
        create_all()
        logger.info("Database schema ensured (DB_CREATE_ALL)")

    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
    else:
        try:
            await _init_rate_limiter(app, logger)
        except Exception as e:
            if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
                app.state.rate_limit_enabled = True
                logger.warning("Rate limiting falling back to local in-memory due to init error: %s", e)
            else:
                app.state.rate_limit_enabled = False
                logger.warning("Rate limiting disabled due to init error: %s", e)

    yield

    if getattr(app.state, "rate_limit_enabled", False):
        try:
            await FastAPILimiter.close()
        except Exception as e:
            logger.warning("Rate limiter close failed: %s", e)
