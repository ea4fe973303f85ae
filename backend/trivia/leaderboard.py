from __future__ import annotations

import itertools
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

from . import paths
from .models import LeaderboardEntry
from .store import Subscription, TreeStore, store

logger = structlog.get_logger(__name__)

StandingsListener = Callable[[List[LeaderboardEntry]], None]


def build_standings(participants: Mapping[str, Any], scores: Mapping[str, Any]) -> List[LeaderboardEntry]:
    """Sum every participant's per-question points and rank them.

    Highest total first; equal totals are ordered by participant id so the
    order is the same on every recompute.
    """
    totals: Dict[str, int] = {pid: 0 for pid in participants}
    for pid, doc in scores.items():
        per_question = (doc or {}).get("perQuestion") or {}
        totals[pid] = sum(int(points) for points in per_question.values())

    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [
        LeaderboardEntry(
            participant_id=pid,
            name=(participants.get(pid) or {}).get("name", "Unknown"),
            points=points,
            rank=position,
        )
        for position, (pid, points) in enumerate(ordered, start=1)
    ]


class _RoomBoard:
    def __init__(self):
        self.participants: Dict[str, Any] = {}
        self.scores: Dict[str, Any] = {}
        self.standings: List[LeaderboardEntry] = []
        self.listeners: Dict[int, StandingsListener] = {}
        self.subscriptions: List[Subscription] = []


class LeaderboardAggregator:
    """Keeps each watched room's standings current from store notifications."""

    def __init__(self, store: TreeStore):
        self.store = store
        self._boards: Dict[str, _RoomBoard] = {}
        self._tokens = itertools.count(1)

    def watch(self, room_id: str) -> None:
        if room_id in self._boards:
            return
        board = _RoomBoard()
        self._boards[room_id] = board

        def on_participants(value: Any) -> None:
            board.participants = value or {}
            self._recompute(room_id, board)

        def on_scores(value: Any) -> None:
            board.scores = value or {}
            self._recompute(room_id, board)

        board.subscriptions = [
            self.store.subscribe(paths.participants(room_id), on_participants),
            self.store.subscribe(paths.scores(room_id), on_scores),
        ]
        logger.debug("leaderboard.watching", room_id=room_id)

    def unwatch(self, room_id: str) -> None:
        board = self._boards.pop(room_id, None)
        if board is None:
            return
        for sub in board.subscriptions:
            self.store.unsubscribe(sub)

    def _recompute(self, room_id: str, board: _RoomBoard) -> None:
        board.standings = build_standings(board.participants, board.scores)
        for listener in list(board.listeners.values()):
            listener(list(board.standings))

    def standings(self, room_id: str) -> List[LeaderboardEntry]:
        self.watch(room_id)
        return list(self._boards[room_id].standings)

    def entry_for(self, room_id: str, participant_id: str) -> Optional[LeaderboardEntry]:
        for entry in self.standings(room_id):
            if entry.participant_id == participant_id:
                return entry
        return None

    def rank_of(self, room_id: str, participant_id: str) -> Optional[Tuple[int, int, int]]:
        """``(points, rank, total_participants)`` for one participant."""
        standings = self.standings(room_id)
        for entry in standings:
            if entry.participant_id == participant_id:
                return entry.points, entry.rank, len(standings)
        return None

    def subscribe(self, room_id: str, listener: StandingsListener) -> int:
        """Register ``listener``; it is called now and after every recompute."""
        self.watch(room_id)
        token = next(self._tokens)
        board = self._boards[room_id]
        board.listeners[token] = listener
        listener(list(board.standings))
        return token

    def unsubscribe(self, room_id: str, token: int) -> None:
        board = self._boards.get(room_id)
        if board is not None:
            board.listeners.pop(token, None)


leaderboard = LeaderboardAggregator(store)
