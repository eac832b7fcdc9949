# client.py
import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import httpx
import websockets

from .config import require_env

# --- slotpoll endpoints ---
SLOTPOLL_HTTP = os.getenv("SLOTPOLL_HTTP", "http://localhost:8000")
SLOTPOLL_WS = os.getenv("SLOTPOLL_WS", "ws://localhost:8000")


def _headers(user_id: Optional[str]) -> Dict[str, str]:
    return {"X-User-Id": user_id} if user_id else {}


async def _post(path: str, payload: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    async with httpx.AsyncClient() as http:
        r = await http.post(f"{SLOTPOLL_HTTP}{path}", json=payload, headers=_headers(user_id), timeout=15)
        r.raise_for_status()
        return r.json()


async def create_meeting(organizer: str, title: str, duration: int = 60, daily_window: Optional[Dict[str, int]] = None) -> dict:
    payload = {"title": title, "duration": duration, "constraints": {"daily_window": daily_window}}
    return await _post("/intents/meeting.create", payload, organizer)


async def join_meeting(meeting_id: str, user_id: Optional[str] = None, guest_name: Optional[str] = None) -> dict:
    return await _post("/intents/participant.join", {"meeting_id": meeting_id, "guest_name": guest_name}, user_id)


async def submit_availability(participant_id: str, slots: List[str], user_id: Optional[str] = None) -> dict:
    return await _post("/intents/availability.submit", {"participant_id": participant_id, "slots": slots}, user_id)


async def finalize_meeting(meeting_id: str, organizer: str) -> dict:
    return await _post("/intents/meeting.finalize", {"meeting_id": meeting_id}, organizer)


async def subscribe_meeting(meeting_id: str):
    uri = f"{SLOTPOLL_WS}/subscriptions/meeting:{meeting_id}"
    async with websockets.connect(uri) as ws:
        async for msg in ws:
            ev = json.loads(msg)
            diff = ev.get("diff", {})
            print(f"[heatmap v{ev['version']}] best={diff.get('best_slot')} "
                  f"({diff.get('best_count', 0)}) responded={diff.get('responded', 0)}")
            for slot, count in sorted(diff.get("tally", {}).items()):
                print(f"  {slot}  {'#' * count} {count}")


def main():
    asyncio.run(subscribe_meeting(require_env("SLOTPOLL_MEETING_ID")))


if __name__ == "__main__":
    main()
