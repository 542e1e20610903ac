from contextlib import asynccontextmanager

from fastapi import FastAPI

from rosterauth.authentication.sign_in_flow import build_sign_in_flow
from rosterauth.main.aiohttp_client import aiohttp_client
from rosterauth.main.config import get_settings
from rosterauth.main.logging import get_logger
from rosterauth.redis.connection import create_redis_client

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup(app)
    yield
    await shutdown(app)


async def startup(app: FastAPI):
    settings = get_settings()
    aiohttp_client.start()

    # Tests hand in a ready-made flow
    if getattr(app.state, "sign_in_flow", None) is None:
        app.state.redis = create_redis_client(settings)
        if app.state.redis is None:
            logger.warning("REDIS_HOST not set; sign-in state is kept in process memory")
        app.state.sign_in_flow = build_sign_in_flow(settings, app.state.redis)


async def shutdown(app: FastAPI):
    await aiohttp_client.stop()
    redis = getattr(app.state, "redis", None)
    if redis is not None:
        await redis.aclose()
