"""WebSocket API for real-time device events.

Clients join rooms: ``user:{email}`` for account-level events such as
device disconnects, and ``device:{address}`` for live telemetry batches.
Pipeline threads publish through ``connection_manager.broadcast``, which
hands the send over to the application's event loop.
"""
import asyncio
import json
import logging
from typing import Dict, Optional, Set
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from metrics import metrics

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["websocket"])


def user_room(email: str) -> str:
    return f"user:{email}"


def device_room(address: str) -> str:
    return f"device:{address.lower()}"


class ConnectionManager:
    """Manages WebSocket connections grouped into rooms."""

    def __init__(self):
        # Map room -> Set[WebSocket]
        self.rooms: Dict[str, Set[WebSocket]] = {}
        # Map WebSocket -> room
        self.connection_rooms: Dict[WebSocket, str] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        """Remember the loop that owns the sockets; called from the app lifespan."""
        self._loop = loop

    async def connect(self, websocket: WebSocket, room: str):
        """Accept a WebSocket client and add it to a room."""
        await websocket.accept()
        self.rooms.setdefault(room, set()).add(websocket)
        self.connection_rooms[websocket] = room
        logger.info(f"WebSocket connected: room={room}, total={len(self.rooms[room])}")

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket client from its room."""
        room = self.connection_rooms.pop(websocket, None)
        if room and room in self.rooms:
            self.rooms[room].discard(websocket)
            if not self.rooms[room]:
                del self.rooms[room]
        logger.info(f"WebSocket disconnected: room={room}")

    async def send_to_room(self, room: str, message: dict):
        """Send a message to every client in a room."""
        if room not in self.rooms:
            return

        disconnected = set()
        for websocket in list(self.rooms[room]):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send to WebSocket: {e}")
                disconnected.add(websocket)

        for ws in disconnected:
            self.disconnect(ws)

    def broadcast(self, room: str, event: str, payload: dict) -> bool:
        """Queue ``{event, data}`` for a room. Safe to call from any thread.

        Returns:
            False if no event loop is bound yet, True once the send is scheduled.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug(f"No event loop bound, dropping '{event}' for {room}")
            return False

        message = {"type": event, "data": payload}
        coro = self.send_to_room(room, message)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            loop.create_task(coro)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)
        metrics.record_broadcast()
        return True

    def broadcast_to_user(self, email: str, event: str, payload: dict) -> bool:
        return self.broadcast(user_room(email), event, payload)

    def broadcast_to_device(self, address: str, event: str, payload: dict) -> bool:
        return self.broadcast(device_room(address), event, payload)

    def get_active_rooms(self) -> Set[str]:
        """Get all rooms that have at least one client."""
        return set(self.rooms.keys())


# Global connection manager
connection_manager = ConnectionManager()


async def _serve(websocket: WebSocket, room: str):
    await connection_manager.connect(websocket, room)
    try:
        while True:
            try:
                data = await websocket.receive_text()
                message = json.loads(data)

                # Handle ping
                if message.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

            except WebSocketDisconnect:
                break
            except ValueError:
                # Ignore non-JSON chatter from clients
                continue
    except Exception as e:
        logger.error(f"WebSocket connection error: {e}", exc_info=True)
    finally:
        connection_manager.disconnect(websocket)


@router.websocket("/users/{user_email}")
async def websocket_user_events(websocket: WebSocket, user_email: str):
    """Account-level events (``DEVICE_DISCONNECTED``) for one user."""
    await _serve(websocket, user_room(user_email))


@router.websocket("/devices/{device_address}/stream")
async def websocket_device_stream(websocket: WebSocket, device_address: str):
    """Batched live telemetry for one device.

    Messages are sent as JSON:
    {
        "type": "telemetry",
        "data": {"deviceId": "...", "samples": [...], "count": 3}
    }
    """
    await _serve(websocket, device_room(device_address))
