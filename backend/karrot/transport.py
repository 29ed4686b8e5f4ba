"""Channel transport used between the host and its participants.

The session code only relies on the small interface below:

    Transport.dial(address) -> Channel
    Transport.listen(address) -> Listener (async iterator of Channels)
    Channel.send(message) / Channel.receive() / async for message in channel

``InMemoryTransport`` links both ends inside one event loop and is what the
tests and single-process demos use. ``relay_client.RelayTransport`` speaks to
the WebSocket relay in ``main.py``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

_CLOSED = object()


class TransportError(RuntimeError):
    """Base class for transport failures."""


class ConnectionFailed(TransportError):
    """Dial or listen could not be established."""


class ChannelClosed(TransportError):
    """The channel (or listener) is closed."""


class Channel(Protocol):
    peer_id: str

    async def send(self, message: Dict[str, Any]) -> None: ...

    async def receive(self) -> Dict[str, Any]: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> "Channel": ...

    async def __anext__(self) -> Dict[str, Any]: ...


class Listener(Protocol):
    address: str

    async def accept(self) -> Channel: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> "Listener": ...

    async def __anext__(self) -> Channel: ...


class Transport(Protocol):
    async def dial(self, address: str) -> Channel: ...

    async def listen(self, address: str) -> Listener: ...


class QueueChannel:
    """Channel whose inbound side is an ``asyncio.Queue`` fed by someone else."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def _deliver(self, message: Any) -> None:
        if not self.closed:
            self._inbox.put_nowait(message)

    def _remote_closed(self) -> None:
        self._inbox.put_nowait(_CLOSED)

    async def receive(self) -> Dict[str, Any]:
        if self.closed and self._inbox.empty():
            raise ChannelClosed(f"channel to {self.peer_id} is closed")
        item = await self._inbox.get()
        if item is _CLOSED:
            self.closed = True
            raise ChannelClosed(f"channel to {self.peer_id} is closed")
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        try:
            return await self.receive()
        except ChannelClosed as exc:
            raise StopAsyncIteration from exc


class QueueListener:
    def __init__(self, address: str):
        self.address = address
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def _offer(self, channel: Any) -> None:
        self._incoming.put_nowait(channel)

    async def accept(self):
        if self.closed and self._incoming.empty():
            raise ChannelClosed(f"listener on {self.address} is closed")
        item = await self._incoming.get()
        if item is _CLOSED:
            self.closed = True
            raise ChannelClosed(f"listener on {self.address} is closed")
        return item

    def _shut(self) -> None:
        if not self.closed:
            self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self.accept()
        except ChannelClosed as exc:
            raise StopAsyncIteration from exc


class MemoryChannel(QueueChannel):
    def __init__(self, peer_id: str):
        super().__init__(peer_id)
        self._peer: Optional["MemoryChannel"] = None

    async def send(self, message: Dict[str, Any]) -> None:
        peer = self._peer
        if self.closed or peer is None or peer.closed:
            raise ChannelClosed(f"channel to {self.peer_id} is closed")
        # round-trip through JSON so both ends only ever see wire data
        peer._deliver(json.loads(json.dumps(message)))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._peer is not None and not self._peer.closed:
            self._peer._remote_closed()
        self._remote_closed()


class MemoryListener(QueueListener):
    def __init__(self, transport: "InMemoryTransport", address: str):
        super().__init__(address)
        self._transport = transport

    async def close(self) -> None:
        if self._transport._rooms.get(self.address) is self:
            del self._transport._rooms[self.address]
        self._shut()


class InMemoryTransport:
    """Loopback transport: every listener and dialer share one process."""

    def __init__(self):
        self._rooms: Dict[str, MemoryListener] = {}

    async def listen(self, address: str) -> MemoryListener:
        if address in self._rooms:
            raise ConnectionFailed(f"address {address} is already bound")
        listener = MemoryListener(self, address)
        self._rooms[address] = listener
        logger.debug("Listening on %s", address)
        return listener

    async def dial(self, address: str) -> MemoryChannel:
        listener = self._rooms.get(address)
        if listener is None or listener.closed:
            raise ConnectionFailed(f"nobody is listening on {address}")

        host_side = MemoryChannel(uuid4().hex[:12])
        client_side = MemoryChannel(address)
        host_side._peer = client_side
        client_side._peer = host_side
        listener._offer(host_side)
        logger.debug("Dialled %s as %s", address, host_side.peer_id)
        return client_side
