from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import structlog

from . import paths
from .errors import StateConflictError, ValidationError
from .models import AnswerRecord, Phase
from .rooms import RoomManager, room_manager
from .store import TreeStore, store, with_store_retry
from .utils import now_ts

logger = structlog.get_logger(__name__)

_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


class AnswerCollector:
    def __init__(self, store: TreeStore, rooms: RoomManager):
        self.store = store
        self.rooms = rooms

    async def submit_answer(
        self,
        room_id: str,
        participant_id: str,
        question_id: str,
        value: str,
    ) -> Optional[AnswerRecord]:
        """Record a participant's answer to the active question.

        Returns the stored record, or ``None`` when the participant already
        answered this question (the first answer is kept and the repeat is
        dropped without an error).
        """
        if value is None or not str(value).strip():
            raise ValidationError("Answer must not be empty")

        await self.rooms.require_room(room_id)
        async with self.rooms.lock(room_id):
            return await with_store_retry(self._submit, room_id, participant_id, question_id, str(value))

    async def _submit(self, room_id: str, participant_id: str, question_id: str, value: str) -> Optional[AnswerRecord]:
        state = await self.rooms.read_state(room_id)
        if state.phase != Phase.ACTIVE:
            raise StateConflictError("No question is open for answers")

        questions = await self.rooms.question_view(room_id)
        index = state.current_question_index
        if index >= len(questions) or questions[index].id != question_id:
            raise StateConflictError("That question is not the active question")

        if not _KEY.match(participant_id or ""):
            raise StateConflictError("Unknown participant")
        if await self.store.read(paths.participant(room_id, participant_id)) is None:
            raise StateConflictError("Unknown participant")

        limit = self.rooms.time_limit
        elapsed = min(max(limit - state.timer, 0), limit)
        record = AnswerRecord(answer=value, answered_at=now_ts(), elapsed=elapsed)

        written = await self.store.write_if_absent(
            paths.answer(room_id, participant_id, question_id),
            record.to_store(),
        )
        if not written:
            logger.info("answer.duplicate_ignored", room_id=room_id, participant_id=participant_id, question_id=question_id)
            return None

        logger.info("answer.recorded", room_id=room_id, participant_id=participant_id, question_id=question_id, elapsed=elapsed)
        return record

    async def answers_for(self, room_id: str, question_id: str) -> Dict[str, AnswerRecord]:
        """Every recorded answer to ``question_id``, keyed by participant id."""
        everything = await self.store.read(paths.answers(room_id)) or {}
        return {
            pid: AnswerRecord.model_validate(per_question[question_id])
            for pid, per_question in everything.items()
            if isinstance(per_question, dict) and question_id in per_question
        }

    async def current_answers(self, room_id: str) -> List[Dict[str, Any]]:
        """Answers to the active question with participant names, oldest first."""
        await self.rooms.require_room(room_id)
        state = await with_store_retry(self.rooms.read_state, room_id)
        questions = await with_store_retry(self.rooms.question_view, room_id)
        if state.phase != Phase.ACTIVE or state.current_question_index >= len(questions):
            return []

        question_id = questions[state.current_question_index].id
        records = await with_store_retry(self.answers_for, room_id, question_id)
        roster = await with_store_retry(self.store.read, paths.participants(room_id)) or {}

        rows = [
            {
                "participant_id": pid,
                "name": (roster.get(pid) or {}).get("name", "Unknown"),
                "question_id": question_id,
                **record.model_dump(),
            }
            for pid, record in records.items()
        ]
        rows.sort(key=lambda row: (row["answered_at"], row["participant_id"]))
        return rows


answer_collector = AnswerCollector(store, room_manager)
