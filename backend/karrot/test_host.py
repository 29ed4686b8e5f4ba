from __future__ import annotations

import asyncio
import random
from unittest import IsolatedAsyncioTestCase, mock

from .events import Broadcaster
from .host import HostSession, Tick
from .mirror import MirrorPhase
from .models import Phase, Quiz
from .participant import ParticipantClient
from .schemas import Envelope, MessageType
from .session import Outbound, SessionError
from .transport import ChannelClosed, ConnectionFailed, InMemoryTransport
from .utils import InvalidRoomCode


def _quiz(time_limit: int = 20) -> Quiz:
    return Quiz.model_validate(
        {
            "title": "Capitals",
            "questions": [
                {
                    "id": "q1",
                    "type": "multiple-choice",
                    "question": "Capital of France?",
                    "options": ["Berlin", "Paris", "Rome"],
                    "correctAnswer": 1,
                    "timeLimit": time_limit,
                },
                {
                    "id": "q2",
                    "type": "ranking",
                    "question": "Order by population",
                    "options": ["Tokyo", "Paris", "Oslo"],
                    "correctOrder": [0, 1, 2],
                    "timeLimit": time_limit,
                },
            ],
        }
    )


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition was not met in time")
        await asyncio.sleep(0.005)


class HostSessionTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.transport = InMemoryTransport()
        # long tick so the clock only moves when a test says so
        self.host = HostSession(
            _quiz(), self.transport, room_code="AB12CD", rng=random.Random(5), tick_interval=60
        )
        await self.host.start()
        self.clients: list[ParticipantClient] = []

    async def asyncTearDown(self) -> None:
        await self.host.close()
        for client in self.clients:
            await client.leave()

    async def _join(self, name: str) -> ParticipantClient:
        client = ParticipantClient(self.transport, tick_interval=60)
        self.clients.append(client)
        await client.join("ab12cd", name)
        await _until(lambda: client.mirror.phase is MirrorPhase.LOBBY)
        return client

    async def test_join_receives_snapshot(self):
        client = await self._join("Ann")

        self.assertEqual(client.room_code, "AB12CD")
        self.assertEqual(client.mirror.quiz.title, "Capitals")
        self.assertIsNone(client.mirror.quiz.questions[0].correct_answer)
        self.assertIn(client.mirror.participant_id, self.host.machine.state.roster)

    async def test_full_session(self):
        ann = await self._join("Ann")
        ben = await self._join("Ben")

        await self.host.begin_countdown(0)
        await _until(lambda: ann.mirror.phase is MirrorPhase.ANSWERING and ben.mirror.phase is MirrorPhase.ANSWERING)

        self.assertTrue(await ann.submit(1))
        self.assertFalse(await ann.submit(0))
        self.assertTrue(await ben.submit(0))
        await _until(lambda: len(self.host.machine.answers_for("q1")) == 2)

        await self.host.reveal_results()
        await _until(lambda: ann.mirror.phase is MirrorPhase.RESULTS and ben.mirror.phase is MirrorPhase.RESULTS)
        self.assertTrue(ann.mirror.result.correct)
        self.assertEqual(ann.mirror.result.points_earned, 1000)
        self.assertEqual(ann.mirror.result.rank, 1)
        self.assertFalse(ben.mirror.result.correct)

        await self.host.advance()
        await _until(lambda: ann.mirror.phase is MirrorPhase.ANSWERING)
        question = ann.mirror.current_question
        # the shown order is shuffled; submit the authored order by label
        order = [question.options.index(label) for label in ["Tokyo", "Paris", "Oslo"]]
        self.assertTrue(await ann.submit(order))
        await _until(lambda: self.host.machine.answer_of(ann.mirror.participant_id, "q2") is not None)

        # last question: reveal and final ranking in one step
        await self.host.advance()
        self.assertIs(self.host.phase, Phase.FINAL_RANKING)
        await _until(lambda: ann.mirror.phase is MirrorPhase.FINAL_RANKING)
        self.assertEqual(ann.mirror.leaderboard[0].score, 2000)

        await self.host.finish()
        await asyncio.wait_for(self.host.wait_closed(), 2)
        await asyncio.wait_for(ann.closed.wait(), 2)
        self.assertIs(ann.mirror.phase, MirrorPhase.ENDED)
        self.assertFalse(ann.mirror.connection_lost)

        with self.assertRaises(SessionError):
            await self.host.advance()

    async def test_out_of_phase_command_raises(self):
        with self.assertRaises(SessionError):
            await self.host.advance()
        self.assertIs(self.host.phase, Phase.LOBBY)

    async def test_stale_ticks_are_ignored(self):
        await self.host.begin_countdown(0)
        current = self.host._timer_generation

        await self.host.post(Tick(current - 1))
        await self.host._command("leaderboard")
        self.assertEqual(self.host.machine.state.time_remaining, 20)

        await self.host.post(Tick(current))
        await self.host._command("leaderboard")
        self.assertEqual(self.host.machine.state.time_remaining, 19)

    async def test_departure_keeps_answers(self):
        ann = await self._join("Ann")
        pid = ann.mirror.participant_id
        await self.host.begin_countdown(0)
        await _until(lambda: ann.mirror.phase is MirrorPhase.ANSWERING)
        await ann.submit(1)
        await _until(lambda: self.host.machine.answer_of(pid, "q1") is not None)

        await ann.leave()
        await _until(lambda: pid in self.host.machine.state.departed)
        self.assertNotIn(pid, self.host.broadcaster.channels)
        self.assertTrue(ann.mirror.connection_lost)
        self.assertEqual(len(self.host.machine.answers_for("q1")), 1)

    async def test_terminate_closes_everyone(self):
        ann = await self._join("Ann")
        await self.host.terminate()
        await asyncio.wait_for(ann.closed.wait(), 2)
        self.assertIs(ann.mirror.phase, MirrorPhase.ENDED)
        with self.assertRaises(ConnectionFailed):
            await self.transport.dial("AB12CD")

    async def test_roster_changes_keep_the_question_clock(self):
        ann = await self._join("Ann")
        await self.host.begin_countdown(0)
        await _until(lambda: ann.mirror.phase is MirrorPhase.ANSWERING)
        generation = self.host._timer_generation
        timer = self.host._timer_task

        # late joiners land straight in the open question
        ben = ParticipantClient(self.transport, tick_interval=60)
        self.clients.append(ben)
        await ben.join("AB12CD", "Ben")
        await _until(lambda: ben.mirror.phase is MirrorPhase.ANSWERING)
        await ben.leave()
        await _until(lambda: ben.mirror.participant_id in self.host.machine.state.departed)

        self.assertEqual(self.host._timer_generation, generation)
        self.assertIs(self.host._timer_task, timer)
        self.assertFalse(timer.done())
        await self.host.post(Tick(generation))
        await self.host._command("leaderboard")
        self.assertEqual(self.host.machine.state.time_remaining, 19)

    async def test_question_summary_goes_through_the_actor(self):
        ann = await self._join("Ann")
        await self._join("Ben")
        await self.host.begin_countdown(0)
        await _until(lambda: ann.mirror.phase is MirrorPhase.ANSWERING)
        await ann.submit(1)
        await _until(lambda: len(self.host.machine.answers_for("q1")) == 1)

        summary = await self.host.question_summary()
        self.assertEqual(summary.question_id, "q1")
        self.assertEqual((summary.responses, summary.response_rate), (1, 50))
        self.assertEqual([t.count for t in summary.options], [0, 1, 0])

        with self.assertRaises(SessionError):
            await self.host.question_summary("missing")


class BroadcasterTests(IsolatedAsyncioTestCase):
    def _channel(self, peer_id: str, fail: bool = False) -> mock.Mock:
        channel = mock.Mock(peer_id=peer_id)
        channel.send = mock.AsyncMock(side_effect=ChannelClosed("gone") if fail else None)
        return channel

    async def test_broadcasts_reach_only_the_roster(self):
        broadcaster = Broadcaster()
        joined, waiting = self._channel("p-a"), self._channel("p-b")
        broadcaster.register(joined)
        broadcaster.register(waiting)

        outbound = [
            Outbound("p-b", Envelope.of(MessageType.QUIZ_DATA, quiz={"title": "T", "questions": []})),
            Outbound(None, Envelope.of(MessageType.SHOW_RANKING)),
        ]
        dead = await broadcaster.deliver(outbound, ["p-a"])

        self.assertEqual(dead, [])
        self.assertEqual([c.args[0]["type"] for c in joined.send.await_args_list], ["SHOW_RANKING"])
        self.assertEqual([c.args[0]["type"] for c in waiting.send.await_args_list], ["QUIZ_DATA"])

    async def test_failed_sends_are_reported_once(self):
        broadcaster = Broadcaster()
        broken = self._channel("p-a", fail=True)
        broadcaster.register(broken)

        outbound = [Outbound(None, Envelope.of(MessageType.SHOW_RANKING)), Outbound(None, Envelope.of(MessageType.QUIZ_ENDED))]
        dead = await broadcaster.deliver(outbound, ["p-a", "p-unknown"])

        self.assertEqual(dead, ["p-a", "p-unknown"])
        broken.send.assert_awaited_once()


class TimerTests(IsolatedAsyncioTestCase):
    async def test_terminate_during_countdown_stops_the_clock(self):
        transport = InMemoryTransport()
        host = HostSession(_quiz(), transport, tick_interval=0.01, countdown_seconds=30)
        await host.start()
        await host.begin_countdown()
        timer = host._timer_task
        self.assertIsNotNone(timer)

        await host.terminate()
        await asyncio.wait_for(host.wait_closed(), 2)
        await asyncio.sleep(0.05)

        self.assertTrue(timer.done())
        self.assertIs(host.phase, Phase.ENDED)
        self.assertIsNone(host.machine.state.countdown_remaining)
        # lobby -> countdown -> ended; the first question never opened
        self.assertEqual(host.machine.transitions, 2)
        self.assertEqual(host.machine.state.answers, [])

    async def test_clock_expiry_reveals_and_mirror_locks(self):
        transport = InMemoryTransport()
        host = HostSession(_quiz(time_limit=5), transport, tick_interval=0.01, countdown_seconds=1)
        await host.start()
        client = ParticipantClient(transport, tick_interval=0.01)
        await client.join(host.room_code, "Cleo")
        await _until(lambda: client.mirror.phase is MirrorPhase.LOBBY)

        await host.begin_countdown()
        await _until(lambda: host.phase is Phase.QUESTION_RESULTS)
        await _until(lambda: client.mirror.phase is MirrorPhase.RESULTS)
        self.assertIsNone(client.mirror.submit_answer(1))
        self.assertIs(client.mirror.result.correct, False)

        await host.close()
        await client.leave()


class ParticipantClientTests(IsolatedAsyncioTestCase):
    async def test_bad_room_code_is_rejected_before_dialing(self):
        transport = mock.Mock()
        transport.dial = mock.AsyncMock()
        client = ParticipantClient(transport)

        with self.assertRaises(InvalidRoomCode):
            await client.join("AB12", "Ann")
        transport.dial.assert_not_called()
        self.assertIs(client.mirror.phase, MirrorPhase.AWAITING_NAME)

    async def test_unknown_room_reports_connection_failure(self):
        client = ParticipantClient(InMemoryTransport())
        with self.assertRaises(ConnectionFailed):
            await client.join("AB12CD", "Ann")
        self.assertTrue(client.mirror.connection_lost)
        self.assertTrue(client.closed.is_set())
