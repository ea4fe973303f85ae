from __future__ import annotations

import asyncio
import re
from typing import Dict, List, Optional

import structlog

from . import paths
from .config import settings
from .errors import RoomNotFoundError
from .models import Phase, Question, Room, RoomStatus, SessionState
from .store import TreeStore, store, with_store_retry
from .utils import new_room_id, now_ts

logger = structlog.get_logger(__name__)

_ROOM_ID = re.compile(r"^[A-Za-z0-9]+$")


class RoomManager:
    """Creates, resets and closes the per-room namespaces of the shared store."""

    def __init__(self, store: TreeStore, *, time_limit: int | None = None, id_length: int | None = None):
        self.store = store
        self.time_limit = time_limit or settings.QUESTION_TIME_LIMIT
        self.id_length = id_length or settings.ROOM_ID_LENGTH
        self.locks: Dict[str, asyncio.Lock] = {}

    def lock(self, room_id: str) -> asyncio.Lock:
        if room_id not in self.locks:
            self.locks[room_id] = asyncio.Lock()
        return self.locks[room_id]

    def idle_state(self) -> SessionState:
        return SessionState(phase=Phase.IDLE, current_question_index=0, timer=self.time_limit)

    async def create_room(self) -> Room:
        return await with_store_retry(self._create_room)

    async def _create_room(self) -> Room:
        while True:
            room = Room(id=new_room_id(self.id_length), created_at=now_ts())
            doc = room.to_store(exclude={"id"})
            doc["quizState"] = self.idle_state().to_store()
            if await self.store.write_if_absent(paths.room(room.id), doc):
                logger.info("room.created", room_id=room.id)
                return room
            logger.info("room.id_collision", room_id=room.id)

    async def get_room(self, room_id: str) -> Optional[Room]:
        if not _ROOM_ID.match(room_id or ""):
            return None
        status = await with_store_retry(self.store.read, paths.status(room_id))
        if status is None:
            return None
        created_at = await with_store_retry(self.store.read, paths.created_at(room_id))
        return Room(id=room_id, created_at=created_at or 0.0, status=status)

    async def require_room(self, room_id: str) -> Room:
        room = await self.get_room(room_id)
        if room is None:
            raise RoomNotFoundError(f"Room {room_id!r} not found")
        return room

    async def read_state(self, room_id: str) -> SessionState:
        doc = await self.store.read(paths.quiz_state(room_id))
        if not doc:
            return self.idle_state()
        return SessionState.model_validate(doc)

    async def question_view(self, room_id: str) -> List[Question]:
        """The questions snapshotted for the current run, in play order."""
        docs = await self.store.read(paths.question_view(room_id)) or []
        return [Question.model_validate(doc) for doc in docs]

    async def clear_room(self, room_id: str) -> None:
        """Return a room to an empty lobby in one transaction.

        Participants, answers, scores, the question view and the clock lease
        go; the global question bank is not touched. Safe to repeat.
        """
        await self.store.transaction(
            {
                paths.participants(room_id): None,
                paths.scores(room_id): None,
                paths.answers(room_id): None,
                paths.quiz_state(room_id): self.idle_state().to_store(),
                paths.question_view(room_id): None,
                paths.lease(room_id): None,
                paths.status(room_id): RoomStatus.WAITING.value,
            }
        )

    async def close_room(self, room_id: str) -> None:
        await with_store_retry(self.store.delete, paths.room(room_id))
        self.locks.pop(room_id, None)
        logger.info("room.closed", room_id=room_id)


room_manager = RoomManager(store)
