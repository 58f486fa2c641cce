from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """
    Manages all shard settings.
    Automatically reads variables from the .env file, every value has a
    default so a worker can come up against a local redis.
    """
    # Redis settings (bus, central store, heartbeats and event queues)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None

    # worker identity, generated at startup when not pinned
    WORKER_ID: Optional[str] = None

    # module loading, defaults to the modules and messages.json shipped inside worker/
    MODULES_DIR: Optional[str] = None
    MESSAGES_FILE: Optional[str] = None

    # playing status rotation (15 minutes)
    ROTATION_INTERVAL_SECONDS: float = 900
    BOT_USERNAME: str = "shardkeeper"

    # command bus
    COMMAND_TIMEOUT_SECONDS: float = 10

    HEARTBEAT_TTL_SECONDS: int = 10
    HEARTBEAT_INTERVAL_SECONDS: int = 3

    # audio backend nodes as host:port
    AUDIO_NODES: List[str] = []
    AUDIO_PASSWORD: str = "youshallnotpass"
    AUDIO_CHECK_TIMEOUT_SECONDS: float = 5

    EVENT_QUEUE_PREFIX: str = "shard:events"
    API_URL: str = "http://localhost:8080"
    LOG_DIR: str = "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",       # Ignores extra variables in .env
        case_sensitive=False  # Allows matching 'redis_host' to 'REDIS_HOST'
    )

settings = Settings()
