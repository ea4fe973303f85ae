"""Rank-weighted scoring for a single question.

A fixed pool of ``MAX_POINTS`` is split between the participants who answered
correctly, weighted by how fast they were: with N correct answers the i-th
fastest (0-based) gets ``round(1000 * (N - i) / S)`` where ``S = N(N+1)/2``.
Everyone else on the roster gets an explicit 0.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional

from .models import AnswerRecord, Question, QuestionType
from .utils import normalize_text

MAX_POINTS = 1000


def is_correct(question: Question, value: Optional[str]) -> bool:
    if value is None:
        return False

    if question.type == QuestionType.FREE_TEXT:
        submitted = normalize_text(value)
        return any(submitted == normalize_text(accepted) for accepted in question.accepted_answers)

    return value == question.correct


def rank_weighted_points(count: int) -> List[int]:
    """Points for ``count`` correct answers ordered fastest first.

    Halves round up. The pool never exceeds ``MAX_POINTS``: any excess left by
    rounding is taken back one point at a time from the slowest ranks that
    still hold points, so the list stays non-increasing.
    """
    if count <= 0:
        return []

    total_weight = count * (count + 1) // 2
    points = [
        (2 * MAX_POINTS * (count - rank) + total_weight) // (2 * total_weight)
        for rank in range(count)
    ]

    excess = sum(points) - MAX_POINTS
    for rank in reversed(range(count)):
        if excess <= 0:
            break
        if points[rank] > 0:
            points[rank] -= 1
            excess -= 1
    return points


def order_correct_answers(
    question: Question,
    answers: Mapping[str, AnswerRecord],
    roster: Iterable[str],
) -> List[str]:
    """Participant ids with a correct answer, fastest first.

    Equal elapsed times fall back to submission order, then participant id.
    """
    members = set(roster)
    correct = [
        (record.elapsed, record.answered_at, pid)
        for pid, record in answers.items()
        if pid in members and is_correct(question, record.answer)
    ]
    correct.sort()
    return [pid for _, _, pid in correct]


def compute_scores(
    question: Question,
    answers: Mapping[str, AnswerRecord],
    participants: Iterable[str],
) -> Dict[str, int]:
    roster = list(participants)
    scores = {pid: 0 for pid in roster}

    ranked = order_correct_answers(question, answers, roster)
    for pid, points in zip(ranked, rank_weighted_points(len(ranked))):
        scores[pid] = points
    return scores
