from __future__ import annotations

import asyncio
import os
import socket
import uuid
from typing import Any, Dict, Optional, Tuple

import structlog

from . import paths, scoring
from .answers import AnswerCollector, answer_collector
from .config import settings
from .errors import (
    ConcurrencyConflict,
    LeaseConflictError,
    NoQuestionsError,
    SessionAlreadyStartedError,
    StateConflictError,
    StoreUnavailableError,
    ValidationError,
)
from .models import Lease, Participant, Phase, Room, RoomStatus, SessionState
from .questions import QuestionBank, question_bank
from .rooms import RoomManager, room_manager
from .store import TreeStore, store, with_store_retry
from .utils import new_participant_id, now_ts

logger = structlog.get_logger(__name__)


class SessionController:
    """Drives the question clock and phase transitions of every room.

    A room's clock belongs to whoever started the session (the lease holder);
    ticks from anyone else are ignored. All state changes of a room happen
    under that room's lock, and the end-of-question write is a conditional
    transaction, so a question is scored at most once no matter how many
    triggers race for it.
    """

    def __init__(
        self,
        store: TreeStore,
        rooms: RoomManager,
        bank: QuestionBank,
        answers: AnswerCollector,
        *,
        tick_interval: float | None = None,
        owner_id: str | None = None,
    ):
        self.store = store
        self.rooms = rooms
        self.bank = bank
        self.answers = answers
        self.tick_interval = settings.TICK_INTERVAL_SECONDS if tick_interval is None else tick_interval
        self.owner_id = owner_id or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._clocks: Dict[str, Tuple[asyncio.Task, asyncio.Event]] = {}

    @property
    def time_limit(self) -> int:
        return self.rooms.time_limit

    async def create_room(self) -> Room:
        return await self.rooms.create_room()

    async def get_state(self, room_id: str) -> SessionState:
        await self.rooms.require_room(room_id)
        return await with_store_retry(self.rooms.read_state, room_id)

    async def join(self, room_id: str, name: str) -> Participant:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name must not be empty")
        if len(name) > settings.MAX_NAME_LENGTH:
            raise ValidationError(f"Name must be at most {settings.MAX_NAME_LENGTH} characters")

        await self.rooms.require_room(room_id)
        async with self.rooms.lock(room_id):
            return await with_store_retry(self._join, room_id, name)

    async def _join(self, room_id: str, name: str) -> Participant:
        state = await self.rooms.read_state(room_id)
        if state.phase != Phase.IDLE:
            raise SessionAlreadyStartedError("The quiz has already started")

        participant = Participant(id=new_participant_id(), name=name, joined_at=now_ts())
        try:
            await self.store.transaction(
                {paths.participant(room_id, participant.id): participant.to_store(exclude={"id"})},
                conditions={paths.quiz_state_field(room_id, "phase"): Phase.IDLE.value},
            )
        except ConcurrencyConflict as exc:
            raise SessionAlreadyStartedError("The quiz has already started") from exc

        logger.info("participant.joined", room_id=room_id, participant_id=participant.id)
        return participant

    async def start_session(self, room_id: str, owner: str | None = None) -> bool:
        """Open question 0 and start the clock.

        Returns ``False`` without changing anything when the session is
        already running or finished.
        """
        owner = owner or self.owner_id
        await self.rooms.require_room(room_id)
        async with self.rooms.lock(room_id):
            started = await with_store_retry(self._start_session, room_id, owner)
        if started:
            self._start_clock(room_id, owner)
        return started

    async def _start_session(self, room_id: str, owner: str) -> bool:
        lease = await self._read_lease(room_id)
        if lease is not None and lease.owner != owner:
            raise LeaseConflictError("Another controller owns this room's clock")

        state = await self.rooms.read_state(room_id)
        if state.phase != Phase.IDLE:
            logger.info("session.start_ignored", room_id=room_id, phase=state.phase.value)
            return False

        questions = await self.bank.all()
        if not questions:
            raise NoQuestionsError("Cannot start a session without questions")

        started_at = now_ts()
        active = SessionState(
            phase=Phase.ACTIVE,
            current_question_index=0,
            timer=self.time_limit,
            started_at=started_at,
        )
        try:
            await self.store.transaction(
                {
                    paths.quiz_state(room_id): active.to_store(),
                    paths.scores(room_id): None,
                    paths.question_view(room_id): [q.to_store() for q in questions],
                    paths.lease(room_id): Lease(owner=owner, acquired_at=started_at).to_store(),
                    paths.status(room_id): RoomStatus.IN_PROGRESS.value,
                },
                conditions={paths.quiz_state_field(room_id, "phase"): Phase.IDLE.value},
            )
        except ConcurrencyConflict:
            logger.info("session.start_lost_race", room_id=room_id)
            return False

        logger.info("session.started", room_id=room_id, owner=owner, questions=len(questions))
        return True

    async def tick(self, room_id: str, owner: str | None = None) -> bool:
        """Advance the room's clock by one unit.

        Returns whether the clock should keep running. Ticks from anyone but
        the lease holder are ignored.
        """
        owner = owner or self.owner_id
        if await self.rooms.get_room(room_id) is None:
            # Closed while a tick was pending.
            return False
        async with self.rooms.lock(room_id):
            return await with_store_retry(self._tick, room_id, owner)

    async def _tick(self, room_id: str, owner: str) -> bool:
        lease = await self._read_lease(room_id)
        if lease is None or lease.owner != owner:
            logger.warning(
                "clock.tick_rejected",
                room_id=room_id,
                owner=owner,
                holder=lease.owner if lease else None,
            )
            return False

        state = await self.rooms.read_state(room_id)
        if state.phase != Phase.ACTIVE:
            return False

        remaining = max(state.timer - 1, 0)
        try:
            await self.store.transaction(
                {paths.quiz_state_field(room_id, "timer"): remaining},
                conditions={
                    paths.quiz_state_field(room_id, "phase"): Phase.ACTIVE.value,
                    paths.quiz_state_field(room_id, "currentQuestionIndex"): state.current_question_index,
                },
            )
        except ConcurrencyConflict:
            return True

        if remaining > 0:
            return True

        await self._end_of_question(room_id, state.current_question_index)
        state = await self.rooms.read_state(room_id)
        return state.phase == Phase.ACTIVE

    async def end_of_question(self, room_id: str, question_index: int) -> bool:
        """Score ``question_index`` and move on, unless that already happened.

        Returns ``True`` only for the call that actually scored the question.
        """
        async with self.rooms.lock(room_id):
            return await with_store_retry(self._end_of_question, room_id, question_index)

    async def _end_of_question(self, room_id: str, question_index: int) -> bool:
        state = await self.rooms.read_state(room_id)
        if state.phase != Phase.ACTIVE or state.current_question_index != question_index:
            logger.info(
                "question.end_skipped",
                room_id=room_id,
                question_index=question_index,
                phase=state.phase.value,
                current=state.current_question_index,
            )
            return False

        questions = await self.rooms.question_view(room_id)
        roster = await self.store.read(paths.participants(room_id)) or {}
        question = questions[question_index] if question_index < len(questions) else None

        if question is None:
            logger.warning("question.missing", room_id=room_id, question_index=question_index)
            points = {pid: 0 for pid in roster}
        else:
            records = await self.answers.answers_for(room_id, question.id)
            points = scoring.compute_scores(question, records, roster)

        updates: Dict[str, Any] = {
            paths.score(room_id, pid, question_index): value for pid, value in points.items()
        }
        updates.update(self._advance_or_finish(room_id, state, len(questions)))

        try:
            await self.store.transaction(
                updates,
                conditions={
                    paths.quiz_state_field(room_id, "lastProcessedIndex"): state.last_processed_index,
                    paths.quiz_state_field(room_id, "phase"): Phase.ACTIVE.value,
                    paths.quiz_state_field(room_id, "currentQuestionIndex"): question_index,
                },
            )
        except ConcurrencyConflict:
            logger.info("question.end_lost_race", room_id=room_id, question_index=question_index)
            return False

        logger.info(
            "question.scored",
            room_id=room_id,
            question_index=question_index,
            participants=len(points),
            correct=sum(1 for value in points.values() if value > 0),
        )
        return True

    def _advance_or_finish(self, room_id: str, state: SessionState, question_count: int) -> Dict[str, Any]:
        updates: Dict[str, Any] = {
            paths.quiz_state_field(room_id, "lastProcessedIndex"): state.current_question_index,
        }
        next_index = state.current_question_index + 1
        if next_index < question_count:
            updates[paths.quiz_state_field(room_id, "currentQuestionIndex")] = next_index
            updates[paths.quiz_state_field(room_id, "timer")] = self.time_limit
        else:
            updates[paths.quiz_state_field(room_id, "phase")] = Phase.FINISHED.value
            updates[paths.status(room_id)] = RoomStatus.FINISHED.value
        return updates

    async def skip_question(self, room_id: str, question_index: int) -> bool:
        """Manually end question ``question_index``.

        The caller names the question it is looking at, so a skip that
        arrives after the clock already ended that question does nothing
        instead of ending the next one.
        """
        await self.rooms.require_room(room_id)
        async with self.rooms.lock(room_id):
            state = await with_store_retry(self.rooms.read_state, room_id)
            if state.phase != Phase.ACTIVE:
                raise StateConflictError("No question is running")
            return await with_store_retry(self._end_of_question, room_id, question_index)

    async def reset_session(self, room_id: str) -> None:
        await self.rooms.require_room(room_id)
        self._stop_clock(room_id)
        async with self.rooms.lock(room_id):
            await with_store_retry(self.rooms.clear_room, room_id)
        logger.info("session.reset", room_id=room_id)

    async def close_room(self, room_id: str) -> None:
        await self.rooms.require_room(room_id)
        self._stop_clock(room_id)
        async with self.rooms.lock(room_id):
            await self.rooms.close_room(room_id)

    async def _read_lease(self, room_id: str) -> Optional[Lease]:
        doc = await self.store.read(paths.lease(room_id))
        return Lease.model_validate(doc) if doc else None

    def is_clock_running(self, room_id: str) -> bool:
        clock = self._clocks.get(room_id)
        return clock is not None and not clock[0].done()

    def _start_clock(self, room_id: str, owner: str) -> None:
        self._stop_clock(room_id)
        stop = asyncio.Event()
        task = asyncio.create_task(self._run_clock(room_id, owner, stop))
        self._clocks[room_id] = (task, stop)

    def _stop_clock(self, room_id: str) -> None:
        clock = self._clocks.pop(room_id, None)
        if clock is not None:
            clock[1].set()

    async def _run_clock(self, room_id: str, owner: str, stop: asyncio.Event) -> None:
        logger.info("clock.started", room_id=room_id, interval=self.tick_interval)
        try:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.tick_interval)
                except asyncio.TimeoutError:
                    pass
                if stop.is_set():
                    break

                try:
                    running = await self.tick(room_id, owner)
                except StoreUnavailableError as exc:
                    # The room keeps its last committed state; the next tick tries again.
                    logger.error("clock.tick_failed", room_id=room_id, error=str(exc))
                    continue
                if not running:
                    break
        finally:
            current = self._clocks.get(room_id)
            if current is not None and current[1] is stop:
                self._clocks.pop(room_id, None)
            logger.info("clock.stopped", room_id=room_id)

    async def shutdown(self) -> None:
        clocks = list(self._clocks.values())
        self._clocks.clear()
        for task, stop in clocks:
            stop.set()
            task.cancel()
        await asyncio.gather(*(task for task, _ in clocks), return_exceptions=True)


controller = SessionController(store, room_manager, question_bank, answer_collector)
