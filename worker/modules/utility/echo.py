DESCRIPTION = "Repeats the given text"
ALIASES = ["say", "repeat"]


async def handler(payload: dict) -> dict:
    text = payload.get("text")
    if not text:
        return {"error": "You need to provide some text to repeat!"}
    return {"message": text}
