from typing import Any, Dict


def chat_key(channel: str, chat_id: str) -> str:
    return f"{channel}:{chat_id}"


def fresh_session(now: float) -> Dict[str, Any]:
    return {"state": "menu", "data": {}, "last_activity": now}
