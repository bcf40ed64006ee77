"""SkillSwap real-time relay.

Clients open a websocket on /ws and exchange JSON frames of the form
{"event": <name>, "data": <payload>}. Rooms are keyed by user id (for
notifications) or friendship id (for chat). Nothing is persisted: an event for
an empty room is dropped.
"""
import asyncio
import logging
import os
from typing import Dict, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("skillswap.relay")

app = FastAPI(title="SkillSwap Relay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RoomManager:
    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}  # room -> sockets
        self.memberships: Dict[WebSocket, Set[str]] = {}  # socket -> rooms
        self._lock = asyncio.Lock()

    async def join(self, room: str, ws: WebSocket):
        async with self._lock:
            self.rooms.setdefault(room, set()).add(ws)
            self.memberships.setdefault(ws, set()).add(room)

    async def leave_all(self, ws: WebSocket):
        async with self._lock:
            for room in self.memberships.pop(ws, set()):
                members = self.rooms.get(room)
                if members is None:
                    continue
                members.discard(ws)
                if not members:
                    del self.rooms[room]

    async def emit(self, room: str, event: str, data) -> int:
        """Send an event to every socket in the room. Returns how many got it."""
        async with self._lock:
            targets = list(self.rooms.get(room, ()))
        delivered = 0
        dead = []
        for ws in targets:
            try:
                await ws.send_json({"event": event, "data": data})
                delivered += 1
            except Exception as e:
                logger.warning("Dropping socket after send failure in room %s: %s", room, e)
                dead.append(ws)
        for ws in dead:
            await self.leave_all(ws)
        return delivered

    def stats(self) -> dict:
        return {"rooms": len(self.rooms), "connections": len(self.memberships)}


manager = RoomManager()


async def handle_event(ws: WebSocket, event: str, data):
    if event == "register":
        if not isinstance(data, str) or not data:
            logger.warning("register without a user id")
            return
        await manager.join(data, ws)
        logger.info("User %s registered", data)
    elif event == "join_chat_room":
        if not isinstance(data, str) or not data:
            logger.warning("join_chat_room without a room id")
            return
        await manager.join(data, ws)
        logger.info("Socket joined chat room %s", data)
    elif event == "send_notification":
        if not isinstance(data, dict) or not data.get("recipientId"):
            logger.warning("send_notification without recipientId")
            return
        await manager.emit(str(data["recipientId"]), "receive_notification", data.get("notification"))
    elif event == "send_message":
        if not isinstance(data, dict) or not data.get("conversationId"):
            logger.warning("send_message without conversationId")
            return
        # the sender's own sockets in the room get the message too
        await manager.emit(str(data["conversationId"]), "receive_message", data.get("message"))
    else:
        logger.warning("Unknown event %r ignored", event)


@app.get("/health")
def health():
    return {"relay": "running", **manager.stats()}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    logger.info("Socket connected: %s", id(websocket))
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except (ValueError, KeyError, TypeError):
                logger.warning("Malformed frame ignored")
                continue
            if not isinstance(frame, dict) or "event" not in frame:
                logger.warning("Frame without event ignored")
                continue
            await handle_event(websocket, frame["event"], frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await manager.leave_all(websocket)
        logger.info("Socket disconnected: %s", id(websocket))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("RELAY_PORT", 3001))
    uvicorn.run(app, host="0.0.0.0", port=port)
