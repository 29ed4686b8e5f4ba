from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from .config import settings
from .mirror import MirrorPhase, ParticipantMirror
from .transport import Channel, Transport, TransportError
from .utils import normalize_room_code

logger = logging.getLogger(__name__)


class ParticipantClient:
    """Connects a ``ParticipantMirror`` to a host over a transport."""

    def __init__(
        self,
        transport: Transport,
        *,
        tick_interval: Optional[float] = None,
        on_change: Optional[Callable[[ParticipantMirror], None]] = None,
    ):
        self.transport = transport
        self.mirror = ParticipantMirror()
        self.tick_interval = settings.TICK_INTERVAL if tick_interval is None else tick_interval
        self.on_change = on_change
        self.closed = asyncio.Event()
        self.room_code: Optional[str] = None

        self._channel: Optional[Channel] = None
        self._reader: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._clock_generation = -1

    async def join(self, room_code: str, name: str, avatar: str = "") -> None:
        """Dial the host and send JOIN.

        An invalid room code raises ``InvalidRoomCode`` before any connection
        is attempted; dial failures surface as ``TransportError``.
        """
        code = normalize_room_code(room_code)
        join = self.mirror.set_name(name, avatar)
        try:
            self._channel = await self.transport.dial(code)
            await self._channel.send(join.to_wire())
        except TransportError:
            self.mirror.connection_closed(f"Could not connect to room {code}")
            self.closed.set()
            self._notify()
            raise

        self.room_code = code
        logger.info("Joined %s as %s", code, self.mirror.name)
        self._reader = asyncio.create_task(self._read())

    async def submit(self, value: Any) -> bool:
        """Send an answer for the open question; ``False`` when already locked."""
        envelope = self.mirror.submit_answer(value)
        if envelope is None or self._channel is None:
            return False
        self._notify()
        try:
            await self._channel.send(envelope.to_wire())
        except TransportError as exc:
            logger.warning("Answer could not be sent: %s", exc)
            self.mirror.connection_closed()
            self._notify()
            return False
        return True

    async def leave(self) -> None:
        if self._channel is not None:
            await self._channel.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        self._stop_ticker()
        self.closed.set()

    async def _read(self) -> None:
        assert self._channel is not None
        try:
            async for message in self._channel:
                if self.mirror.handle(message):
                    self._sync_ticker()
                    self._notify()
                if self.mirror.phase is MirrorPhase.ENDED:
                    break
        except TransportError as exc:
            logger.warning("Lost connection to %s: %s", self.room_code, exc)
        finally:
            self._stop_ticker()
            if self.mirror.phase is not MirrorPhase.ENDED:
                self.mirror.connection_closed()
                self._notify()
            self.closed.set()

    def _sync_ticker(self) -> None:
        if self.mirror.clock_generation == self._clock_generation:
            return
        self._clock_generation = self.mirror.clock_generation
        self._stop_ticker()
        if self.mirror.clock_running:
            self._ticker = asyncio.create_task(self._tick_loop())

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick_loop(self) -> None:
        while self.mirror.clock_running:
            await asyncio.sleep(self.tick_interval)
            if self.mirror.tick():
                self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.mirror)
