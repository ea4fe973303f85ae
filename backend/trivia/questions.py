from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pydantic import ValidationError as ModelValidationError

from . import paths
from .errors import ValidationError
from .models import Question
from .store import TreeStore, store

logger = structlog.get_logger(__name__)

# Field names used by older question files.
_LEGACY_TYPES = {"fill_text": "free_text"}


def _from_document(question_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(doc)
    data.setdefault("id", question_id)
    if "question" in data and "prompt" not in data:
        data["prompt"] = data.pop("question")
    data["type"] = _LEGACY_TYPES.get(data.get("type"), data.get("type"))

    correct = data.get("correct")
    if data["type"] == "free_text" and correct is not None and "acceptedAnswers" not in data:
        data["acceptedAnswers"] = correct if isinstance(correct, list) else [correct]
        data.pop("correct")
    return data


def parse_questions(payload: Any) -> List[Question]:
    """Build questions from a list, a ``{"questions": [...]}`` wrapper or an id mapping."""
    if isinstance(payload, dict) and "questions" in payload:
        payload = payload["questions"]

    if isinstance(payload, dict):
        entries = [(str(qid), doc) for qid, doc in payload.items()]
    elif isinstance(payload, list):
        entries = [(doc.get("id", f"q{idx + 1}") if isinstance(doc, dict) else None, doc) for idx, doc in enumerate(payload)]
    else:
        raise ValidationError("Question bank must be a list or a mapping")

    for qid, doc in entries:
        if not isinstance(doc, dict):
            raise ValidationError(f"Question {qid or '?'} must be an object, got {type(doc).__name__}")
    items = [_from_document(str(qid), doc) for qid, doc in entries]

    try:
        return [Question.model_validate(item) for item in items]
    except ModelValidationError as exc:
        raise ValidationError(f"Invalid question bank: {exc}") from exc


class QuestionBank:
    """The global question set under ``questions/``, kept in insertion order."""

    def __init__(self, store: TreeStore):
        self.store = store

    async def replace(self, questions: Sequence[Question]) -> None:
        ids = [q.id for q in questions]
        if len(set(ids)) != len(ids):
            raise ValidationError("Question ids must be unique")

        await self.store.write(paths.QUESTIONS, {q.id: q.to_store(exclude={"id"}) for q in questions})
        logger.info("questions.replaced", count=len(ids))

    async def all(self) -> List[Question]:
        docs = await self.store.read(paths.QUESTIONS) or {}
        return [Question.model_validate({**doc, "id": qid}) for qid, doc in docs.items()]

    async def ids(self) -> List[str]:
        docs = await self.store.read(paths.QUESTIONS) or {}
        return list(docs)

    async def get(self, question_id: str) -> Optional[Question]:
        doc = await self.store.read(paths.question(question_id))
        return Question.model_validate({**doc, "id": question_id}) if doc else None

    async def load_file(self, path: str) -> int:
        with open(path, encoding="utf-8") as fh:
            questions = parse_questions(json.load(fh))
        await self.replace(questions)
        return len(questions)


question_bank = QuestionBank(store)
