"""Canonical store paths. Everything a room owns lives under ``rooms/{room_id}``."""

from .store import join_path

QUESTIONS = "questions"


def question(question_id: str) -> str:
    return join_path(QUESTIONS, question_id)


def room(room_id: str) -> str:
    return join_path("rooms", room_id)


def participants(room_id: str) -> str:
    return join_path(room(room_id), "participants")


def participant(room_id: str, participant_id: str) -> str:
    return join_path(participants(room_id), participant_id)


def quiz_state(room_id: str) -> str:
    return join_path(room(room_id), "quizState")


def quiz_state_field(room_id: str, field: str) -> str:
    return join_path(quiz_state(room_id), field)


def answers(room_id: str) -> str:
    return join_path(quiz_state(room_id), "answers")


def answer(room_id: str, participant_id: str, question_id: str) -> str:
    return join_path(answers(room_id), participant_id, question_id)


def scores(room_id: str) -> str:
    return join_path(room(room_id), "scores")


def score(room_id: str, participant_id: str, question_index: int) -> str:
    return join_path(scores(room_id), participant_id, "perQuestion", question_index)


def question_view(room_id: str) -> str:
    return join_path(room(room_id), "questions")


def lease(room_id: str) -> str:
    return join_path(room(room_id), "lease")


def status(room_id: str) -> str:
    return join_path(room(room_id), "status")


def created_at(room_id: str) -> str:
    return join_path(room(room_id), "createdAt")
