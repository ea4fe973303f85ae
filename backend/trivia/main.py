from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from . import errors, paths
from .answers import answer_collector
from .config import settings
from .game import controller
from .leaderboard import leaderboard
from .logging_config import setup_logging
from .models import Phase, SessionState
from .questions import question_bank
from .rooms import room_manager
from .schemas import (
    AdminUpsertQuestionsIn,
    AnswerIn,
    AnswerOut,
    CreateRoomOut,
    JoinIn,
    JoinOut,
    LeaderboardOut,
    PublicRoomOut,
    SkipIn,
    StandingOut,
)
from .storage import upload_question_image as store_question_image
from .store import store, with_store_retry

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    if settings.QUESTION_BANK_PATH:
        count = await with_store_retry(question_bank.load_file, settings.QUESTION_BANK_PATH)
        logger.info("questions.loaded", path=settings.QUESTION_BANK_PATH, count=count)
    yield
    await controller.shutdown()


app = FastAPI(title="Live Trivia API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = (
    (errors.ValidationError, 400),
    (errors.RoomNotFoundError, 404),
    (errors.StateConflictError, 409),
    (errors.StoreUnavailableError, 503),
)


def _http_error(exc: errors.QuizError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    logger.error("api.unmapped_error", error=repr(exc))
    return HTTPException(status_code=500, detail="Unexpected error")


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _roster(docs: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"participant_id": pid, "name": doc.get("name"), "joined_at": doc.get("joinedAt")}
        for pid, doc in (docs or {}).items()
    ]


async def _public_room(room_id: str) -> PublicRoomOut:
    room = await room_manager.require_room(room_id)
    state = await with_store_retry(room_manager.read_state, room_id)
    questions = await with_store_retry(room_manager.question_view, room_id)
    roster = await with_store_retry(store.read, paths.participants(room_id))

    question = None
    if state.phase == Phase.ACTIVE and state.current_question_index < len(questions):
        question = questions[state.current_question_index].public_view()

    question_count = len(questions) or len(await with_store_retry(question_bank.ids))
    return PublicRoomOut(
        id=room.id,
        status=room.status.value,
        phase=state.phase.value,
        current_question_index=state.current_question_index,
        question_count=question_count,
        timer=state.timer,
        started_at=state.started_at,
        participants=_roster(roster),
        question=question,
    )


# --- admin -----------------------------------------------------------------


@app.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"ok": True}


@app.post("/api/admin/rooms", response_model=CreateRoomOut)
async def create_room(_: None = Depends(require_admin)):
    try:
        room = await controller.create_room()
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    leaderboard.watch(room.id)
    return CreateRoomOut(room_id=room.id, created_at=room.created_at)


@app.delete("/api/admin/rooms/{room_id}")
async def close_room(room_id: str, _: None = Depends(require_admin)):
    try:
        await controller.close_room(room_id)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    leaderboard.unwatch(room_id)
    return {"ok": True}


@app.post("/api/admin/rooms/{room_id}/start")
async def start(room_id: str, _: None = Depends(require_admin)):
    try:
        started = await controller.start_session(room_id)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "started": started}


@app.post("/api/admin/rooms/{room_id}/skip")
async def skip(room_id: str, payload: SkipIn, _: None = Depends(require_admin)):
    try:
        skipped = await controller.skip_question(room_id, payload.question_index)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "skipped": skipped}


@app.post("/api/admin/rooms/{room_id}/reset")
async def reset(room_id: str, _: None = Depends(require_admin)):
    try:
        await controller.reset_session(room_id)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    return {"ok": True}


@app.get("/api/admin/rooms/{room_id}/answers")
async def current_answers(room_id: str, _: None = Depends(require_admin)):
    try:
        rows = await answer_collector.current_answers(room_id)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    return {"answers": rows}


@app.get("/api/admin/questions")
async def list_questions(_: None = Depends(require_admin)):
    questions = await with_store_retry(question_bank.all)
    return {"questions": [q.to_store() for q in questions]}


@app.post("/api/admin/questions")
async def upsert_questions(payload: AdminUpsertQuestionsIn, _: None = Depends(require_admin)):
    try:
        await with_store_retry(question_bank.replace, payload.questions)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "count": len(payload.questions)}


@app.post("/api/admin/question-image")
async def upload_question_image(
    question_id: str = Form(...),
    file: UploadFile = File(...),
    _: None = Depends(require_admin),
):
    if not settings.AZURE_STORAGE_CONNECTION_STRING:
        raise HTTPException(status_code=500, detail="Image storage is not configured")

    data = await file.read()
    try:
        url = await store_question_image(question_id, file.filename, data, file.content_type)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:
        logger.exception("storage.upload_failed", question_id=question_id)
        raise HTTPException(status_code=500, detail="Failed to upload image") from exc

    return {"url": url}


# --- participants ----------------------------------------------------------


@app.get("/api/rooms/{room_id}", response_model=PublicRoomOut)
async def get_room(room_id: str):
    try:
        return await _public_room(room_id)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc


@app.post("/api/rooms/{room_id}/join", response_model=JoinOut)
async def join(room_id: str, payload: JoinIn):
    try:
        participant = await controller.join(room_id, payload.name)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    return JoinOut(participant_id=participant.id, name=participant.name)


@app.post("/api/rooms/{room_id}/answer", response_model=AnswerOut)
async def answer(room_id: str, payload: AnswerIn):
    try:
        record = await answer_collector.submit_answer(
            room_id, payload.participant_id, payload.question_id, payload.value
        )
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    if record is None:
        return AnswerOut(accepted=False)
    return AnswerOut(accepted=True, elapsed=record.elapsed)


@app.get("/api/rooms/{room_id}/leaderboard", response_model=LeaderboardOut)
async def get_leaderboard(room_id: str):
    try:
        await room_manager.require_room(room_id)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc
    return LeaderboardOut(room_id=room_id, standings=leaderboard.standings(room_id))


@app.get("/api/rooms/{room_id}/participants/{participant_id}", response_model=StandingOut)
async def get_standing(room_id: str, participant_id: str):
    try:
        await room_manager.require_room(room_id)
    except errors.QuizError as exc:
        raise _http_error(exc) from exc

    entry = leaderboard.entry_for(room_id, participant_id)
    position = leaderboard.rank_of(room_id, participant_id)
    if entry is None or position is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    points, rank, total = position
    return StandingOut(
        participant_id=participant_id,
        name=entry.name,
        points=points,
        rank=rank,
        total_participants=total,
    )


# --- push feed -------------------------------------------------------------


async def _quiz_state_message(room_id: str, value: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Describe one quiz state notification.

    Built from the notified value alone plus the run's question snapshot,
    which does not change while a session runs, so a message queued behind
    later writes still pairs its own index with its own question.
    """
    doc = dict(value or {})
    answers = doc.pop("answers", None) or {}
    state = SessionState.model_validate(doc) if doc else room_manager.idle_state()
    questions = await with_store_retry(room_manager.question_view, room_id)

    question = None
    answered = 0
    if state.phase == Phase.ACTIVE and state.current_question_index < len(questions):
        current = questions[state.current_question_index]
        question = current.public_view()
        answered = sum(1 for per_question in answers.values() if current.id in per_question)

    return {
        "type": "quiz_state",
        "state": doc or state.to_store(),
        "question": question,
        "question_count": len(questions),
        "answered": answered,
    }


async def _pump_feed(websocket: WebSocket, room_id: str, queue: asyncio.Queue) -> None:
    last_phase: Optional[str] = None
    while True:
        kind, value = await queue.get()
        if kind == "quiz_state":
            phase = (value or {}).get("phase", Phase.IDLE.value)
            if last_phase not in (None, Phase.IDLE.value) and phase == Phase.IDLE.value:
                await websocket.send_json({"type": "reset"})
            last_phase = phase
            try:
                message = await _quiz_state_message(room_id, value)
            except errors.StoreUnavailableError as exc:
                logger.error("feed.message_dropped", room_id=room_id, kind=kind, error=str(exc))
                continue
        elif kind == "participants":
            message = {"type": "participants", "participants": _roster(value)}
        else:
            message = {"type": "leaderboard", "standings": [entry.to_store() for entry in value]}
        await websocket.send_json(message)


async def _drain(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@app.websocket("/ws/rooms/{room_id}")
async def room_feed(websocket: WebSocket, room_id: str):
    if await room_manager.get_room(room_id) is None:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()

    subscriptions = [
        store.subscribe(paths.quiz_state(room_id), lambda value: queue.put_nowait(("quiz_state", value))),
        store.subscribe(paths.participants(room_id), lambda value: queue.put_nowait(("participants", value))),
    ]
    token = leaderboard.subscribe(room_id, lambda standings: queue.put_nowait(("leaderboard", standings)))
    sender = asyncio.create_task(_pump_feed(websocket, room_id, queue))
    receiver = asyncio.create_task(_drain(websocket))

    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        failed = [task for task in done if task.exception() is not None]
        for task in failed:
            logger.error("feed.failed", room_id=room_id, error=repr(task.exception()))
        if failed:
            try:
                await websocket.close(code=1011)
            except RuntimeError as exc:
                logger.debug("feed.close_after_failure", room_id=room_id, error=str(exc))
    finally:
        sender.cancel()
        receiver.cancel()
        for sub in subscriptions:
            store.unsubscribe(sub)
        leaderboard.unsubscribe(room_id, token)
