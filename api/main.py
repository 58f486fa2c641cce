from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from core.bus import (AUDIO_RELOAD_FAILED, AUDIO_RELOAD_SUCCEEDED, CENTRAL_NODE,
                      RELOAD_FAILED, RELOAD_SUCCEEDED, RedisCommandBus)
from core.config import settings
from core.logging_config import configure_logging
from core.redis_client import get_async_redis_client
from .routers import broadcast, modules, status
import logging, uuid

logger = logging.getLogger(__name__)


async def log_reload_succeeded(payload: dict):
    logger.info(f"worker:{payload.get('worker')} reloaded module '{payload.get('identifier')}'")


async def log_reload_failed(payload: dict):
    logger.warning(f"worker:{payload.get('worker')} could not reload "
                   f"'{payload.get('identifier')}': {payload.get('reason')}")


async def log_audio_reload(payload: dict):
    if "count" in payload:
        logger.info(f"worker:{payload.get('worker')} reconnected {payload['count']} audio node(s)")
    else:
        logger.warning(f"worker:{payload.get('worker')} could not reconnect the audio backend")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """ Joins the command bus as a controller node for the lifetime of the app """
    redis_client = get_async_redis_client()
    # one node per API replica so replies never cross
    bus = RedisCommandBus(redis_client, f"{CENTRAL_NODE}-{uuid.uuid4().hex[:8]}",
                          timeout=settings.COMMAND_TIMEOUT_SECONDS)
    bus.on_broadcast(RELOAD_SUCCEEDED, log_reload_succeeded)
    bus.on_broadcast(RELOAD_FAILED, log_reload_failed)
    bus.on_broadcast(AUDIO_RELOAD_SUCCEEDED, log_audio_reload)
    bus.on_broadcast(AUDIO_RELOAD_FAILED, log_audio_reload)
    await bus.start()
    app.state.bus = bus
    yield
    app.state.bus = None
    await bus.stop()
    await redis_client.aclose()


app = FastAPI(lifespan=lifespan)

origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(status.router)
app.include_router(modules.router)
app.include_router(broadcast.router)

# Call at startup
configure_logging("api")


@app.get("/")
def root():
    return {"message": "Welcome to shardkeeper"}
