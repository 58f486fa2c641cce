from pydantic import BaseModel, Field
from typing import Any, List, Optional

# ===================== COMMAND OUTCOMES ==================================

class CommandOutcome(BaseModel):
    worker: str
    # False when the command never reached a handler (no listener, timeout, unknown command)
    delivered: bool
    ok: bool
    result: Any = None
    error: Optional[str] = None


class ReloadResponse(BaseModel):
    identifier: str
    outcomes: List[CommandOutcome]


class AudioReloadResponse(BaseModel):
    outcomes: List[CommandOutcome]

# ============= BROADCAST SCHEMAS =========================

class BroadcastRequest(BaseModel):
    message: str = Field(..., min_length=1)


class BroadcastResponse(BaseModel):
    message: Optional[str] = None
    outcome: CommandOutcome

# ============= STATUS SCHEMAS =========================

class WorkerStatus(BaseModel):
    worker_id: str
    status: Optional[str] = None


class StatusResponse(BaseModel):
    status: str
    redis: str
    broadcast: Optional[str] = None
    workers: List[WorkerStatus]
