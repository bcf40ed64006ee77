"""Best-effort client for the relay server.

Every emit opens a short-lived websocket, sends one frame and closes it.
Failures are logged and swallowed; the caller's database write stands.
"""
import json
import logging
import os

from fastapi.encoders import jsonable_encoder
from websockets.sync.client import connect

logger = logging.getLogger("skillswap.relay_client")

RELAY_URL = os.getenv("RELAY_URL", "ws://localhost:3001/ws")
RELAY_TIMEOUT = float(os.getenv("RELAY_TIMEOUT", "2"))


class RelayClient:
    def __init__(self, url: str = RELAY_URL, timeout: float = RELAY_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def emit(self, event: str, data) -> bool:
        frame = json.dumps({"event": event, "data": jsonable_encoder(data)})
        try:
            with connect(self.url, open_timeout=self.timeout, close_timeout=self.timeout) as ws:
                ws.send(frame)
        except Exception as e:
            logger.warning("Relay emit %s to %s failed: %s", event, self.url, e)
            return False
        return True

    def send_notification(self, recipient_id: str, notification: dict) -> bool:
        return self.emit("send_notification", {"recipientId": recipient_id, "notification": notification})

    def send_message(self, conversation_id: str, message: dict) -> bool:
        return self.emit("send_message", {"conversationId": conversation_id, "message": message})


relay_client = RelayClient()


def get_relay() -> RelayClient:
    return relay_client
