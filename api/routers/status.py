from fastapi import APIRouter, Depends, status, HTTPException
from core.redis_client import get_redis
from core.store import STORE_PREFIX
from worker.broadcast import BROADCAST_KEY
from .. import schemas
from ..utils import live_workers, worker_status
import redis

router = APIRouter(
    tags=["Status"]
)

@router.get("/status", status_code=status.HTTP_200_OK, response_model=schemas.StatusResponse)
def check_health(redis_client: redis.Redis = Depends(get_redis)):
    """
    Performs a health check of the pool.
    Lists live workers with their current status and the active broadcast, if any.
    """
    try:
        redis_client.ping()
        workers = [
            schemas.WorkerStatus(worker_id=w, status=worker_status(redis_client, w))
            for w in live_workers(redis_client)
        ]
        broadcast = redis_client.get(f"{STORE_PREFIX}:{BROADCAST_KEY}")
    except redis.RedisError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                    "status": "error",
                    "message": "A critical dependency is down.",
                    "error_details": str(e)
                    }
        )

    return schemas.StatusResponse(status="ok", redis="connected",
                                  broadcast=broadcast, workers=workers)
