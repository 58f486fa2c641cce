NAME = "play"
DESCRIPTION = "Queues a track on the audio backend"
REQUIRES = "audio"
ALIASES = ["p"]

# per-process queue, dropped on unload
queues = {}


async def handler(payload: dict) -> dict:
    channel = payload.get("channel")
    track = payload.get("track")
    if not channel or not track:
        return {"error": "A channel and a track are required."}
    queues.setdefault(channel, []).append(track)
    return {"message": f"Queued {track}", "position": len(queues[channel])}


def teardown():
    queues.clear()
