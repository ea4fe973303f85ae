from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import LeaderboardEntry, Question


class CreateRoomOut(BaseModel):
    room_id: str
    created_at: float


class JoinIn(BaseModel):
    name: str


class JoinOut(BaseModel):
    participant_id: str
    name: str


class AnswerIn(BaseModel):
    participant_id: str
    question_id: str
    value: str


class AnswerOut(BaseModel):
    accepted: bool
    elapsed: Optional[int] = None


class SkipIn(BaseModel):
    question_index: int = Field(ge=0)


class AdminUpsertQuestionsIn(BaseModel):
    questions: List[Question]


class PublicRoomOut(BaseModel):
    id: str
    status: str
    phase: str
    current_question_index: int
    question_count: int
    timer: int
    started_at: Optional[float]
    participants: List[Dict[str, Any]]
    question: Optional[Dict[str, Any]] = None


class LeaderboardOut(BaseModel):
    room_id: str
    standings: List[LeaderboardEntry]


class StandingOut(BaseModel):
    participant_id: str
    name: str
    points: int
    rank: int
    total_participants: int
