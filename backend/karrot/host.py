"""Host runtime: one actor task that owns the session state machine.

Channel events, timer ticks and host commands are all posted to the same
queue and applied one at a time, so the state machine is never touched
concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .config import settings
from .events import Broadcaster
from .models import LeaderboardEntry, Phase, QuestionSummary, Quiz
from .schemas import ProtocolError, parse_message
from .session import SessionError, SessionStateMachine
from .transport import Channel, Listener, Transport, TransportError

logger = logging.getLogger(__name__)

TIMED_PHASES = (Phase.COUNTDOWN, Phase.QUESTION_ACTIVE)


@dataclass
class ChannelOpened:
    channel: Channel


@dataclass
class MessageReceived:
    peer_id: str
    message: Any


@dataclass
class ChannelLost:
    peer_id: str


@dataclass
class Tick:
    generation: int


@dataclass
class HostCommand:
    action: str
    args: tuple = ()
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class HostSession:
    def __init__(
        self,
        quiz: Quiz,
        transport: Transport,
        *,
        room_code: Optional[str] = None,
        rng: Optional[random.Random] = None,
        tick_interval: Optional[float] = None,
        countdown_seconds: Optional[int] = None,
        on_change: Optional[Callable[["HostSession"], None]] = None,
    ):
        self.machine = SessionStateMachine(quiz, room_code=room_code, rng=rng)
        self.transport = transport
        self.broadcaster = Broadcaster()
        self.tick_interval = settings.TICK_INTERVAL if tick_interval is None else tick_interval
        self.countdown_seconds = settings.COUNTDOWN_SECONDS if countdown_seconds is None else countdown_seconds
        self.on_change = on_change
        self.ended = asyncio.Event()

        self._events: asyncio.Queue = asyncio.Queue()
        self._listener: Optional[Listener] = None
        self._readers: Set[asyncio.Task] = set()
        self._accept_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._timer_generation = -1

    @property
    def room_code(self) -> str:
        return self.machine.room_code

    @property
    def phase(self) -> Phase:
        return self.machine.phase

    async def start(self) -> None:
        """Bind the room code on the transport and start processing events."""
        self._listener = await self.transport.listen(self.room_code)
        self._run_task = asyncio.create_task(self._run())
        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.info("Hosting %s", self.room_code)

    async def wait_closed(self) -> None:
        await self.ended.wait()

    # ---------- Host commands ----------

    async def begin_countdown(self, seconds: Optional[int] = None) -> None:
        await self._command("begin_countdown", self.countdown_seconds if seconds is None else seconds)

    async def reveal_results(self) -> None:
        await self._command("reveal_results")

    async def advance(self) -> None:
        await self._command("advance")

    async def retreat(self) -> None:
        await self._command("retreat")

    async def finish(self) -> None:
        await self._command("finish")

    async def terminate(self) -> None:
        await self._command("terminate")

    async def close(self) -> None:
        """Terminate the session if it is still running and wait for teardown."""
        if not self.ended.is_set() and self._run_task is not None:
            try:
                await self.terminate()
            except SessionError:
                pass
        elif self._run_task is None:
            self.ended.set()
        await self.ended.wait()

    def leaderboard(self) -> List[LeaderboardEntry]:
        return self.machine.leaderboard()

    async def question_summary(self, question_id: Optional[str] = None) -> QuestionSummary:
        return await self._command("question_summary", question_id)

    async def _command(self, action: str, *args: Any) -> Any:
        if self.ended.is_set():
            raise SessionError("Session already ended")
        if self._run_task is None:
            raise SessionError("Session has not been started")
        future = asyncio.get_running_loop().create_future()
        await self.post(HostCommand(action, args, future))
        return await future

    # ---------- Event loop ----------

    async def post(self, event: Any) -> None:
        await self._events.put(event)

    async def _accept_loop(self) -> None:
        assert self._listener is not None
        try:
            async for channel in self._listener:
                await self.post(ChannelOpened(channel))
        except TransportError as exc:
            logger.warning("Listener for %s failed: %s", self.room_code, exc)
            if not self.ended.is_set():
                await self.post(HostCommand("terminate"))

    async def _read_channel(self, channel: Channel) -> None:
        try:
            async for message in channel:
                await self.post(MessageReceived(channel.peer_id, message))
        except TransportError as exc:
            logger.info("Channel %s failed: %s", channel.peer_id, exc)
        finally:
            await self.post(ChannelLost(channel.peer_id))

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            settle = self._dispatch(event)
            await self._flush()
            self._sync_timer()
            if self.on_change is not None:
                self.on_change(self)

            ended = self.machine.phase is Phase.ENDED
            if ended:
                await self._shutdown()
            # commands complete only once their messages are out
            if settle is not None:
                settle()
            if ended:
                return

    def _dispatch(self, event: Any) -> Optional[Callable[[], None]]:
        if isinstance(event, ChannelOpened):
            self.broadcaster.register(event.channel)
            task = asyncio.create_task(self._read_channel(event.channel))
            self._readers.add(task)
            task.add_done_callback(self._readers.discard)

        elif isinstance(event, MessageReceived):
            try:
                envelope = parse_message(event.message)
            except ProtocolError as exc:
                logger.debug("Dropping message from %s: %s", event.peer_id, exc)
                return None
            self.machine.handle(event.peer_id, envelope)

        elif isinstance(event, ChannelLost):
            self.broadcaster.unregister(event.peer_id)
            self.machine.remove(event.peer_id)

        elif isinstance(event, Tick):
            if event.generation == self._timer_generation:
                self.machine.tick()

        elif isinstance(event, HostCommand):
            return self._run_command(event)
        return None

    def _run_command(self, command: HostCommand) -> Optional[Callable[[], None]]:
        future = command.future
        result: Any = None
        error: Optional[SessionError] = None
        try:
            result = getattr(self.machine, command.action)(*command.args)
        except SessionError as exc:
            logger.debug("Host command %s rejected: %s", command.action, exc)
            error = exc

        if future is None:
            if error is not None:
                logger.warning("Host command %s failed: %s", command.action, error)
            return None

        def settle() -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        return settle

    async def _flush(self) -> None:
        pending = self.machine.drain()
        if not pending:
            return
        dead = await self.broadcaster.deliver(pending, self.machine.state.roster)
        for peer_id in dead:
            self.machine.remove(peer_id)
            channel = self.broadcaster.unregister(peer_id)
            if channel is not None:
                await channel.close()

    def _sync_timer(self) -> None:
        """Restart the clock whenever the machine changed phase."""
        generation = self.machine.transitions
        if generation == self._timer_generation:
            return
        self._timer_generation = generation
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        if self.machine.phase in TIMED_PHASES:
            self._timer_task = asyncio.create_task(self._timer(generation))

    async def _timer(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            await self.post(Tick(generation))

    async def _shutdown(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
        if self._accept_task is not None:
            self._accept_task.cancel()
        if self._listener is not None:
            await self._listener.close()

        channels: Dict[str, Channel] = dict(self.broadcaster.channels)
        self.broadcaster.channels.clear()
        for channel in channels.values():
            await channel.close()
        for task in list(self._readers):
            task.cancel()

        while not self._events.empty():
            event = self._events.get_nowait()
            if isinstance(event, HostCommand) and event.future is not None and not event.future.done():
                event.future.set_exception(SessionError("Session already ended"))

        logger.info("Host for %s shut down", self.room_code)
        self.ended.set()
