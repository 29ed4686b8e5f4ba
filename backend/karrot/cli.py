"""Command line entry points: run the relay, host a quiz, or join one."""

from __future__ import annotations

import argparse
import asyncio
import sys
import threading
from typing import Any, List, Optional

import uvicorn

from .config import settings
from .host import HostSession
from .logging_config import configure_logging
from .mirror import LOCK_SUBMITTED, MirrorPhase, ParticipantMirror
from .models import InvalidAnswer, Phase, QuestionSummary, QuestionType, QuizQuestion
from .participant import ParticipantClient
from .relay_client import RelayTransport
from .session import SessionError
from .storage import QuizImportError, load_quiz, save_results, upload_results, write_template
from .transport import TransportError
from .utils import InvalidRoomCode, normalize_room_code


HOST_HELP = "commands: start, next, back, reveal, finish, end, board, players"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="karrot", description="Live quiz sessions over a relay")
    parser.add_argument("--log-level", default=None, help="Logging level (default from settings)")
    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser("relay", help="Run the WebSocket relay")
    relay.add_argument("--host", default=settings.RELAY_HOST, help="Interface to bind")
    relay.add_argument("--port", type=int, default=settings.RELAY_PORT, help="Port to listen on")

    host = commands.add_parser("host", help="Host a quiz from a JSON file")
    host.add_argument("quiz_file", help="Quiz definition (JSON)")
    host.add_argument("--relay", default=settings.RELAY_URL, help="Relay URL")
    host.add_argument("--countdown", type=int, default=settings.COUNTDOWN_SECONDS, help="Countdown seconds")
    host.add_argument("--results-dir", default=settings.RESULTS_DIR, help="Where results are written")
    host.add_argument("--upload", action="store_true", help="Also upload results to Azure Blob Storage")

    join = commands.add_parser("join", help="Join a session as a participant")
    join.add_argument("room_code", help="Six character room code")
    join.add_argument("--name", "-n", required=True, help="Display name")
    join.add_argument("--avatar", default="", help="Avatar token")
    join.add_argument("--relay", default=settings.RELAY_URL, help="Relay URL")

    template = commands.add_parser("template", help="Write a sample quiz file to start from")
    template.add_argument("path", nargs="?", default=None, help="Target file or directory")
    return parser


def parse_answer_text(question: QuizQuestion, text: str) -> Any:
    """Turn a typed line into the answer value for ``question``."""
    text = text.strip()
    if question.type is QuestionType.SINGLE_CHOICE:
        return int(text)
    if question.type in (QuestionType.MULTI_SELECT, QuestionType.RANKING):
        return [int(part) for part in text.replace(" ", ",").split(",") if part]
    if question.type is QuestionType.NUMERIC_SCALE:
        number = float(text)
        return int(number) if number.is_integer() else number
    return text


def _stdin_lines(loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
    """Feed stdin lines into a queue from a daemon thread (``None`` on EOF)."""
    queue: asyncio.Queue = asyncio.Queue()

    def pump() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=pump, daemon=True).start()
    return queue


def _describe_question(mirror: ParticipantMirror) -> List[str]:
    question = mirror.current_question
    if question is None:
        return []
    lines = [f"Q{mirror.current_question_index + 1}: {question.prompt} ({mirror.time_left}s)"]
    for index, option in enumerate(question.options or []):
        lines.append(f"  [{index}] {option}")
    if question.type is QuestionType.NUMERIC_SCALE:
        low, high = question.scale_bounds
        lines.append(f"  answer with a number from {low:g} to {high:g}")
    return lines


class _ParticipantView:
    """Prints a line whenever the mirror's phase changes."""

    def __init__(self) -> None:
        self._last: Optional[tuple] = None

    def __call__(self, mirror: ParticipantMirror) -> None:
        key = (mirror.phase, mirror.current_question_index, mirror.lock_reason, mirror.connection_lost)
        if key == self._last:
            return
        self._last = key

        if mirror.connection_lost:
            print(mirror.error or "Disconnected")
        elif mirror.phase is MirrorPhase.LOBBY:
            print(f"Joined '{mirror.quiz.title if mirror.quiz else ''}'. Waiting for the host...")
        elif mirror.phase is MirrorPhase.COUNTDOWN:
            print(f"Starting in {mirror.countdown}s")
        elif mirror.phase is MirrorPhase.ANSWERING:
            print("\n".join(_describe_question(mirror)))
        elif mirror.phase is MirrorPhase.LOCKED:
            print("Answer locked in." if mirror.lock_reason == LOCK_SUBMITTED else "Time is up.")
        elif mirror.phase is MirrorPhase.RESULTS and mirror.result is not None:
            result = mirror.result
            if result.correct is None:
                print("Results are in.")
            else:
                verdict = "Correct" if result.correct else "Wrong"
                print(f"{verdict}: +{result.points_earned} points, rank {result.rank}")
        elif mirror.phase is MirrorPhase.FINAL_RANKING:
            for position, entry in enumerate(mirror.leaderboard, start=1):
                print(f"{position}. {entry.name} {entry.score}")
        elif mirror.phase is MirrorPhase.ENDED:
            print("The quiz has ended.")


async def run_join(room_code: str, name: str, avatar: str, relay_url: str) -> int:
    view = _ParticipantView()
    client = ParticipantClient(RelayTransport(relay_url), on_change=view)
    try:
        await client.join(room_code, name, avatar)
    except TransportError as exc:
        print(f"Could not join {room_code}: {exc}", file=sys.stderr)
        return 1

    lines = _stdin_lines(asyncio.get_running_loop())
    closed = asyncio.create_task(client.closed.wait())
    while not client.closed.is_set():
        reader = asyncio.create_task(lines.get())
        done, _ = await asyncio.wait({reader, closed}, return_when=asyncio.FIRST_COMPLETED)
        if reader not in done:
            reader.cancel()
            break
        line = reader.result()
        if line is None:
            break
        question = client.mirror.current_question
        if client.mirror.phase is not MirrorPhase.ANSWERING or question is None or not line.strip():
            continue
        try:
            value = parse_answer_text(question, line)
            await client.submit(value)
        except (ValueError, InvalidAnswer) as exc:
            print(f"Could not use that answer: {exc}")

    await client.leave()
    return 0 if client.mirror.phase is MirrorPhase.ENDED else 1


def _print_board(session: HostSession) -> None:
    for position, entry in enumerate(session.leaderboard(), start=1):
        print(f"{position}. {entry.name} {entry.score}")


def format_summary(summary: QuestionSummary) -> List[str]:
    lines = [f"{summary.responses}/{summary.roster_size} answered ({summary.response_rate}%)"]
    if summary.type is QuestionType.RANKING:
        for position, tally in enumerate(summary.options or [], start=1):
            lines.append(f"  {position}. {tally.label}: {tally.points} points")
    elif summary.options is not None:
        for tally in summary.options:
            lines.append(f"  [{tally.index}] {tally.label}: {tally.count} ({tally.percentage:.0f}%)")
    elif summary.type is QuestionType.NUMERIC_SCALE:
        lines.append(f"  average: {summary.average:.1f}" if summary.average is not None else "  average: -")
    else:
        for response in summary.texts or []:
            lines.append(f"  {response.participant_name}: {response.text}")
    return lines


async def _print_summary(session: HostSession) -> None:
    if session.machine.current_question is None or not session.machine.state.has_started:
        return
    try:
        summary = await session.question_summary()
    except SessionError:
        return
    print("\n".join(format_summary(summary)))


class _HostView:
    def __init__(self) -> None:
        self._last: Optional[tuple] = None
        self._roster = 0

    def __call__(self, session: HostSession) -> None:
        roster = len(session.machine.state.roster)
        if roster != self._roster:
            self._roster = roster
            print(f"[{session.room_code}] {roster} participant(s)")

        key = (session.phase, session.machine.state.current_question_index)
        if key == self._last:
            return
        self._last = key
        question = session.machine.current_question
        if session.phase is Phase.QUESTION_ACTIVE and question is not None:
            print(f"[{session.room_code}] Q{key[1] + 1}: {question.prompt}")
        else:
            print(f"[{session.room_code}] {session.phase.value}")


async def run_host(quiz_file: str, relay_url: str, countdown: int, results_dir: str, upload: bool) -> int:
    quiz = load_quiz(quiz_file)
    session = HostSession(quiz, RelayTransport(relay_url), countdown_seconds=countdown, on_change=_HostView())
    try:
        await session.start()
    except TransportError as exc:
        print(f"Could not open room: {exc}", file=sys.stderr)
        return 1

    print(f"Room code: {session.room_code}")
    print(HOST_HELP)

    actions = {
        "start": session.begin_countdown,
        "next": session.advance,
        "back": session.retreat,
        "reveal": session.reveal_results,
        "finish": session.finish,
        "end": session.terminate,
    }
    lines = _stdin_lines(asyncio.get_running_loop())
    ended = asyncio.create_task(session.wait_closed())
    while not session.ended.is_set():
        reader = asyncio.create_task(lines.get())
        done, _ = await asyncio.wait({reader, ended}, return_when=asyncio.FIRST_COMPLETED)
        if reader not in done:
            reader.cancel()
            break
        line = reader.result()
        if line is None:
            await session.close()
            break

        command = line.strip().lower()
        if command == "board":
            _print_board(session)
            await _print_summary(session)
        elif command == "players":
            for participant in session.machine.roster:
                print(f"- {participant.name}")
        elif command in actions:
            try:
                await actions[command]()
            except SessionError as exc:
                print(exc)
                continue
            if command == "reveal":
                await _print_summary(session)
        elif command:
            print(HOST_HELP)

    document = session.machine.results_document()
    save_results(document, results_dir)
    if upload:
        url = await upload_results(document)
        print(f"Results uploaded: {url}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "relay":
        uvicorn.run("backend.karrot.main:app", host=args.host, port=args.port, log_config=None)
        return 0

    if args.command == "join":
        try:
            code = normalize_room_code(args.room_code)
        except InvalidRoomCode as exc:
            print(exc, file=sys.stderr)
            return 2
        return asyncio.run(run_join(code, args.name, args.avatar, args.relay))

    if args.command == "template":
        try:
            path = write_template(args.path)
        except OSError as exc:
            print(f"Could not write template: {exc}", file=sys.stderr)
            return 1
        print(f"Template written to {path}")
        return 0

    try:
        return asyncio.run(run_host(args.quiz_file, args.relay, args.countdown, args.results_dir, args.upload))
    except QuizImportError as exc:
        print(exc, file=sys.stderr)
        return 2
