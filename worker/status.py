import json, logging

logger = logging.getLogger(__name__)

DEFAULT_STATE = "dnd"


def status_key(worker_id: str) -> str:
    return f"shard:worker:{worker_id}:status"


class StatusSink:
    """Where the worker's externally visible status ends up (the gateway session)."""

    async def set_status(self, text: str, state: str = DEFAULT_STATE, decorate: bool = True):
        raise NotImplementedError


class RedisStatusSink(StatusSink):
    """
    Publishes the rendered status under shard:worker:<id>:status, where the
    gateway client and the control plane pick it up.
    """

    def __init__(self, redis, worker_id: str, bot_username: str):
        self.redis = redis
        self.worker_id = worker_id
        self.bot_username = bot_username

    def render(self, text: str, decorate: bool = True) -> str:
        if not decorate:
            return text
        return f"{text} | @{self.bot_username} help"

    async def set_status(self, text: str, state: str = DEFAULT_STATE, decorate: bool = True):
        name = self.render(text, decorate)
        await self.redis.set(status_key(self.worker_id), json.dumps({"state": state, "name": name}))
        logger.info(f"Status of worker:{self.worker_id} is now '{name}'")
