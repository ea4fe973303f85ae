from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Phase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    FINISHED = "finished"


class RoomStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single_choice"
    FREE_TEXT = "free_text"
    IMAGE_CHOICE = "image_choice"


class StoreModel(BaseModel):
    """Base for records kept in the shared store under camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self, **kwargs: Any) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json", **kwargs)


class QuestionOption(StoreModel):
    label: str
    image: Optional[str] = None


class Question(StoreModel):
    id: str = Field(pattern=r"^[A-Za-z0-9_-]+$")
    type: QuestionType
    prompt: str
    options: List[QuestionOption] = Field(default_factory=list)
    correct: Optional[str] = None
    accepted_answers: List[str] = Field(default_factory=list)
    image: Optional[str] = None

    @field_validator("options", mode="before")
    @classmethod
    def _labels_as_options(cls, value):
        if isinstance(value, list):
            return [{"label": item} if isinstance(item, str) else item for item in value]
        return value

    @model_validator(mode="after")
    def _check_answer_key(self) -> "Question":
        if self.type == QuestionType.FREE_TEXT:
            if not any(answer.strip() for answer in self.accepted_answers):
                raise ValueError("free_text questions need at least one accepted answer")
            return self

        if not self.options:
            raise ValueError(f"{self.type.value} questions need options")
        if self.correct not in {option.label for option in self.options}:
            raise ValueError("correct must be one of the option labels")
        return self

    def public_view(self) -> Dict[str, Any]:
        """The question as participants see it, without the answer key."""
        return self.to_store(exclude={"correct", "accepted_answers"})


class Participant(StoreModel):
    id: str
    name: str
    joined_at: float


class AnswerRecord(StoreModel):
    answer: str
    answered_at: float
    elapsed: int


class SessionState(StoreModel):
    phase: Phase = Phase.IDLE
    current_question_index: int = 0
    timer: int
    started_at: Optional[float] = None
    last_processed_index: Optional[int] = None


class Lease(StoreModel):
    owner: str
    acquired_at: float


class Room(StoreModel):
    id: str
    created_at: float
    status: RoomStatus = RoomStatus.WAITING


class LeaderboardEntry(StoreModel):
    participant_id: str
    name: str
    points: int
    rank: int
