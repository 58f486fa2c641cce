import time

DESCRIPTION = "Replies with pong and the worker's clock"


def handler(payload: dict) -> dict:
    return {"message": "pong", "time": time.time()}
