import asyncio, json, logging
from typing import List, Optional

import redis
from fastapi import HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from core.bus import CommandBus
from core.errors import BusDeliveryError
from worker.heartbeat import HEARTBEAT_PATTERN, worker_id_from_key
from worker.status import status_key
from . import schemas

logger = logging.getLogger(__name__)

# ====================== BUS DEPENDENCY =========================

def get_bus(request: Request) -> CommandBus:
    """ The controller's bus node, joined in the app lifespan """
    bus = getattr(request.app.state, "bus", None)
    if bus is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail="Controller is not connected to the command bus")
    return bus

# ====================== WORKER DISCOVERY =========================

def live_workers(redis_client: redis.Redis) -> List[str]:
    """ Every worker whose heartbeat key has not expired """
    return sorted(worker_id_from_key(key) for key in redis_client.scan_iter(match=HEARTBEAT_PATTERN))


def worker_status(redis_client: redis.Redis, worker_id: str) -> Optional[str]:
    raw = redis_client.get(status_key(worker_id))
    if not raw:
        return None
    try:
        return json.loads(raw).get("name")
    except (json.JSONDecodeError, AttributeError):
        return raw


def pick_targets(redis_client: redis.Redis, worker: Optional[str]) -> List[str]:
    if worker:
        return [worker]
    workers = live_workers(redis_client)
    if not workers:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail="No live worker found")
    return workers


async def find_targets(redis_client: redis.Redis, worker: Optional[str]) -> List[str]:
    """ pick_targets for async endpoints: the scan uses the sync client, keep it off the loop """
    return await run_in_threadpool(pick_targets, redis_client, worker)

# ====================== SENDING COMMANDS =========================

async def send_command(bus: CommandBus, worker: str, name: str, payload: dict = None) -> schemas.CommandOutcome:
    try:
        reply = await bus.request(worker, name, payload)
    except BusDeliveryError as e:
        logger.error(f"Command '{name}' to worker:{worker} was not delivered: {e}")
        return schemas.CommandOutcome(worker=worker, delivered=False, ok=False, error=str(e))
    return schemas.CommandOutcome(worker=worker, delivered=True, ok=reply.ok,
                                  result=reply.result, error=reply.error)


async def fan_out(bus: CommandBus, workers: List[str], name: str, payload: dict = None) -> List[schemas.CommandOutcome]:
    return list(await asyncio.gather(*(send_command(bus, w, name, payload) for w in workers)))


def raise_for_outcome(outcome: schemas.CommandOutcome) -> schemas.CommandOutcome:
    """ Maps a single-target outcome to the HTTP error the caller should see """
    if not outcome.delivered:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=outcome.error)
    if not outcome.ok:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=outcome.error)
    return outcome
