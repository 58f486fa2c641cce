from fastapi import APIRouter, Depends, status
from core.bus import BEGIN_OVERRIDE, END_OVERRIDE, CommandBus
from core.redis_client import get_redis
from .. import schemas
from ..utils import find_targets, get_bus, raise_for_outcome, send_command
import redis, logging

logger = logging.getLogger(__name__)

router = APIRouter(
    tags = ['broadcast'],
    prefix = "/broadcast"
)


@router.put("", status_code=status.HTTP_200_OK, response_model=schemas.BroadcastResponse)
async def begin_broadcast(body: schemas.BroadcastRequest,
                          bus: CommandBus = Depends(get_bus),
                          redis_client: redis.Redis = Depends(get_redis)):
    """
    Overrides the playing status of the whole pool.
    One live worker runs the command, it stores the value and notifies the others.
    """
    worker = (await find_targets(redis_client, None))[0]
    outcome = raise_for_outcome(await send_command(bus, worker, BEGIN_OVERRIDE, {"value": body.message}))
    logger.info(f"Broadcast '{body.message}' started through worker:{worker}")
    return schemas.BroadcastResponse(message=body.message, outcome=outcome)


@router.delete("", status_code=status.HTTP_200_OK, response_model=schemas.BroadcastResponse)
async def end_broadcast(bus: CommandBus = Depends(get_bus),
                        redis_client: redis.Redis = Depends(get_redis)):
    """ Ends the override, every worker goes back to rotating """
    worker = (await find_targets(redis_client, None))[0]
    outcome = raise_for_outcome(await send_command(bus, worker, END_OVERRIDE))
    logger.info(f"Broadcast ended through worker:{worker}")
    return schemas.BroadcastResponse(outcome=outcome)
