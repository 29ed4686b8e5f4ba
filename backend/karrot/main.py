import asyncio
import json
import logging
from typing import Any, Dict
from uuid import uuid4

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .utils import InvalidRoomCode, normalize_room_code

logger = logging.getLogger(__name__)

CLOSE_BAD_CODE = 4400
CLOSE_NO_HOST = 4404
CLOSE_ROOM_TAKEN = 4409

# raised by the ASGI server when writing to a socket that is already gone
SEND_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)

app = FastAPI(title="Karrot Relay")

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RelayRoom:
    """One host socket and the participant sockets dialled into its code."""

    def __init__(self, code: str, host: WebSocket):
        self.code = code
        self.host = host
        self.peers: Dict[str, WebSocket] = {}
        self.lock = asyncio.Lock()

    async def to_host(self, frame: Dict[str, Any]) -> None:
        async with self.lock:
            await self.host.send_text(json.dumps(frame))


class RelayHub:
    def __init__(self):
        self.rooms: Dict[str, RelayRoom] = {}

    def is_open(self, code: str) -> bool:
        return code in self.rooms

    def open(self, code: str, host: WebSocket) -> RelayRoom:
        room = RelayRoom(code, host)
        self.rooms[code] = room
        return room

    async def close(self, room: RelayRoom) -> None:
        if self.rooms.get(room.code) is room:
            del self.rooms[room.code]
        peers = list(room.peers.values())
        room.peers.clear()
        for peer in peers:
            try:
                await peer.close()
            except SEND_ERRORS:
                pass


hub = RelayHub()


@app.get("/api/health")
async def health():
    return {"ok": True, "rooms": len(hub.rooms)}


@app.get("/api/rooms/{room_code}")
async def room_status(room_code: str):
    try:
        code = normalize_room_code(room_code)
    except InvalidRoomCode as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"roomCode": code, "open": hub.is_open(code)}


@app.websocket("/ws/host/{room_code}")
async def host_socket(websocket: WebSocket, room_code: str):
    try:
        code = normalize_room_code(room_code)
    except InvalidRoomCode:
        await websocket.close(code=CLOSE_BAD_CODE)
        return
    if hub.is_open(code):
        await websocket.close(code=CLOSE_ROOM_TAKEN)
        return

    # claimed before the first await so a racing host sees it taken
    room = hub.open(code, websocket)
    try:
        await websocket.accept()
        logger.info("Host opened room %s", code)
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.debug("Dropping unreadable frame from host %s", code)
                continue
            if not isinstance(frame, dict):
                continue

            peer_id = frame.get("peer")
            peer = room.peers.get(peer_id)
            if peer is None:
                continue
            if frame.get("close"):
                room.peers.pop(peer_id, None)
                try:
                    await peer.close()
                except SEND_ERRORS:
                    pass
                continue
            try:
                await peer.send_text(json.dumps(frame.get("data")))
            except SEND_ERRORS as exc:
                logger.info("Could not forward to %s in %s: %s", peer_id, code, exc)
    except WebSocketDisconnect:
        logger.info("Host left room %s", code)
    finally:
        await hub.close(room)


@app.websocket("/ws/join/{room_code}")
async def join_socket(websocket: WebSocket, room_code: str):
    try:
        code = normalize_room_code(room_code)
    except InvalidRoomCode:
        await websocket.close(code=CLOSE_BAD_CODE)
        return
    room = hub.rooms.get(code)
    if room is None:
        await websocket.close(code=CLOSE_NO_HOST)
        return

    await websocket.accept()
    peer_id = uuid4().hex[:12]
    room.peers[peer_id] = websocket
    try:
        await room.to_host({"event": "open", "peer": peer_id})
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                logger.debug("Dropping unreadable frame from %s", peer_id)
                continue
            await room.to_host({"event": "message", "peer": peer_id, "data": data})
    except WebSocketDisconnect:
        logger.debug("Participant %s left %s", peer_id, code)
    except SEND_ERRORS as exc:
        logger.info("Relay for %s in %s stopped: %s", peer_id, code, exc)
    finally:
        if room.peers.pop(peer_id, None) is not None and hub.rooms.get(code) is room:
            try:
                await room.to_host({"event": "close", "peer": peer_id})
            except SEND_ERRORS:
                pass
