from fastapi import APIRouter, Depends, status
from typing import Optional
from core.bus import CommandBus, RELOAD, RELOAD_AUDIO
from core.redis_client import get_redis
from .. import schemas
from ..utils import fan_out, find_targets, get_bus, raise_for_outcome
import redis, logging

logger = logging.getLogger(__name__)

router = APIRouter(
    tags = ['modules']
)


@router.post("/modules/{identifier}/reload", status_code=status.HTTP_200_OK,
             response_model=schemas.ReloadResponse)
async def reload_module(identifier: str, worker: Optional[str] = None,
                        bus: CommandBus = Depends(get_bus),
                        redis_client: redis.Redis = Depends(get_redis)):
    """
    Reloads one handler module.
    With `worker` only that worker is asked and its failure becomes an HTTP error,
    without it every live worker is asked and each outcome is reported.
    """
    targets = await find_targets(redis_client, worker)
    logger.info(f"Reloading module '{identifier}' on {len(targets)} worker(s)")
    outcomes = await fan_out(bus, targets, RELOAD, {"identifier": identifier})
    if worker:
        raise_for_outcome(outcomes[0])
    return schemas.ReloadResponse(identifier=identifier, outcomes=outcomes)


@router.post("/audio/reload", status_code=status.HTTP_200_OK,
             response_model=schemas.AudioReloadResponse)
async def reload_audio(worker: Optional[str] = None,
                       bus: CommandBus = Depends(get_bus),
                       redis_client: redis.Redis = Depends(get_redis)):
    """ Re-establishes the audio backend connections """
    targets = await find_targets(redis_client, worker)
    outcomes = await fan_out(bus, targets, RELOAD_AUDIO)
    if worker:
        raise_for_outcome(outcomes[0])
    return schemas.AudioReloadResponse(outcomes=outcomes)
