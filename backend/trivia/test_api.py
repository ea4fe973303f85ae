from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, TestCase, mock

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from . import main
from .config import settings
from .errors import StoreUnavailableError
from .main import app
from .models import Question

QUESTIONS = [
    {"id": "q1", "type": "single_choice", "prompt": "2 + 2?", "options": ["3", "4"], "correct": "4"},
    {"id": "q2", "type": "free_text", "prompt": "Capital of France?", "acceptedAnswers": ["Paris"]},
]


class ApiTestCase(TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls._client_cm = TestClient(app)
        cls.client = cls._client_cm.__enter__()
        cls.admin = {"X-Admin-Key": settings.ADMIN_KEY}

    @classmethod
    def tearDownClass(cls) -> None:
        cls._client_cm.__exit__(None, None, None)

    def load_questions(self, questions=QUESTIONS):
        res = self.client.post("/api/admin/questions", json={"questions": questions}, headers=self.admin)
        self.assertEqual(res.status_code, 200, res.text)

    def create_room(self) -> str:
        res = self.client.post("/api/admin/rooms", headers=self.admin)
        self.assertEqual(res.status_code, 200, res.text)
        return res.json()["room_id"]

    def join(self, room_id: str, name: str) -> str:
        res = self.client.post(f"/api/rooms/{room_id}/join", json={"name": name})
        self.assertEqual(res.status_code, 200, res.text)
        return res.json()["participant_id"]


class AdminApiTests(ApiTestCase):
    def test_admin_routes_require_key(self):
        self.assertEqual(self.client.post("/api/admin/rooms").status_code, 401)
        self.assertEqual(self.client.get("/api/admin/verify", headers={"X-Admin-Key": "wrong"}).status_code, 401)
        self.assertEqual(self.client.get("/api/admin/verify", headers=self.admin).json(), {"ok": True})

    def test_question_bank_round_trip(self):
        self.load_questions()
        res = self.client.get("/api/admin/questions", headers=self.admin)
        self.assertEqual([q["id"] for q in res.json()["questions"]], ["q1", "q2"])

    def test_invalid_questions_are_rejected(self):
        res = self.client.post(
            "/api/admin/questions",
            json={"questions": [{"id": "q1", "type": "single_choice", "prompt": "?", "options": ["a"], "correct": "b"}]},
            headers=self.admin,
        )
        self.assertEqual(res.status_code, 422)

    def test_start_without_questions_is_a_bad_request(self):
        self.load_questions([])
        room_id = self.create_room()
        res = self.client.post(f"/api/admin/rooms/{room_id}/start", headers=self.admin)
        self.assertEqual(res.status_code, 400)
        self.load_questions()

    def test_unknown_room_is_not_found(self):
        for path in ("start", "skip", "reset"):
            res = self.client.post(f"/api/admin/rooms/nothere/{path}", json={"question_index": 0}, headers=self.admin)
            self.assertEqual(res.status_code, 404, path)

    def test_skip_must_name_the_question(self):
        room_id = self.create_room()
        res = self.client.post(f"/api/admin/rooms/{room_id}/skip", headers=self.admin)
        self.assertEqual(res.status_code, 422)

    def test_skip_when_nothing_is_running_conflicts(self):
        room_id = self.create_room()
        res = self.client.post(f"/api/admin/rooms/{room_id}/skip", json={"question_index": 0}, headers=self.admin)
        self.assertEqual(res.status_code, 409)

    def test_image_upload_without_storage_configured(self):
        if settings.AZURE_STORAGE_CONNECTION_STRING:
            self.skipTest("blob storage is configured")
        res = self.client.post(
            "/api/admin/question-image",
            data={"question_id": "q1"},
            files={"file": ("kit.png", b"data", "image/png")},
            headers=self.admin,
        )
        self.assertEqual(res.status_code, 500)

    def test_close_room(self):
        room_id = self.create_room()
        self.assertEqual(self.client.delete(f"/api/admin/rooms/{room_id}", headers=self.admin).status_code, 200)
        self.assertEqual(self.client.get(f"/api/rooms/{room_id}").status_code, 404)


class SessionFlowTests(ApiTestCase):
    def setUp(self) -> None:
        self.load_questions()
        self.room_id = self.create_room()

    def test_join_validation(self):
        self.assertEqual(self.client.post(f"/api/rooms/{self.room_id}/join", json={"name": " "}).status_code, 400)
        self.assertEqual(self.client.post("/api/rooms/nothere/join", json={"name": "Ada"}).status_code, 404)

    def test_lobby_view(self):
        self.join(self.room_id, "Ada")
        room = self.client.get(f"/api/rooms/{self.room_id}").json()

        self.assertEqual(room["phase"], "idle")
        self.assertEqual(room["status"], "waiting")
        self.assertEqual(room["question_count"], 2)
        self.assertIsNone(room["question"])
        self.assertEqual([p["name"] for p in room["participants"]], ["Ada"])

    def test_full_round(self):
        ada = self.join(self.room_id, "Ada")
        bo = self.join(self.room_id, "Bo")

        res = self.client.post(f"/api/admin/rooms/{self.room_id}/start", headers=self.admin)
        self.assertEqual(res.json(), {"ok": True, "started": True})
        again = self.client.post(f"/api/admin/rooms/{self.room_id}/start", headers=self.admin)
        self.assertEqual(again.json()["started"], False)

        room = self.client.get(f"/api/rooms/{self.room_id}").json()
        self.assertEqual(room["phase"], "active")
        self.assertEqual(room["status"], "in_progress")
        self.assertEqual(room["question"]["id"], "q1")
        self.assertNotIn("correct", room["question"])

        late = self.client.post(f"/api/rooms/{self.room_id}/join", json={"name": "Late"})
        self.assertEqual(late.status_code, 409)

        answer = {"participant_id": ada, "question_id": "q1", "value": "4"}
        first = self.client.post(f"/api/rooms/{self.room_id}/answer", json=answer)
        self.assertTrue(first.json()["accepted"])
        repeat = self.client.post(f"/api/rooms/{self.room_id}/answer", json={**answer, "value": "3"})
        self.assertEqual(repeat.json(), {"accepted": False, "elapsed": None})

        wrong_question = self.client.post(
            f"/api/rooms/{self.room_id}/answer", json={"participant_id": bo, "question_id": "q2", "value": "Paris"}
        )
        self.assertEqual(wrong_question.status_code, 409)

        rows = self.client.get(f"/api/admin/rooms/{self.room_id}/answers", headers=self.admin).json()["answers"]
        self.assertEqual([(r["name"], r["answer"]) for r in rows], [("Ada", "4")])

        skipped = self.client.post(
            f"/api/admin/rooms/{self.room_id}/skip", json={"question_index": 0}, headers=self.admin
        )
        self.assertEqual(skipped.json(), {"ok": True, "skipped": True})

        board = self.client.get(f"/api/rooms/{self.room_id}/leaderboard").json()
        self.assertEqual(board["standings"][0], {"participantId": ada, "name": "Ada", "points": 1000, "rank": 1})
        self.assertEqual(board["standings"][1]["points"], 0)

        standing = self.client.get(f"/api/rooms/{self.room_id}/participants/{bo}").json()
        self.assertEqual((standing["rank"], standing["total_participants"]), (2, 2))
        self.assertEqual(self.client.get(f"/api/rooms/{self.room_id}/participants/ghost").status_code, 404)

        self.client.post(f"/api/admin/rooms/{self.room_id}/skip", json={"question_index": 1}, headers=self.admin)
        room = self.client.get(f"/api/rooms/{self.room_id}").json()
        self.assertEqual((room["phase"], room["status"]), ("finished", "finished"))

        res = self.client.post(f"/api/admin/rooms/{self.room_id}/reset", headers=self.admin)
        self.assertEqual(res.status_code, 200)
        room = self.client.get(f"/api/rooms/{self.room_id}").json()
        self.assertEqual((room["phase"], room["participants"]), ("idle", []))
        self.assertEqual(self.client.get(f"/api/rooms/{self.room_id}/leaderboard").json()["standings"], [])


class RoomFeedTests(ApiTestCase):
    def setUp(self) -> None:
        self.load_questions()
        self.room_id = self.create_room()

    def test_unknown_room_is_refused(self):
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/ws/rooms/nothere") as ws:
                ws.receive_json()
        self.assertEqual(ctx.exception.code, 4404)

    def test_feed_sends_snapshot_then_updates(self):
        with self.client.websocket_connect(f"/ws/rooms/{self.room_id}") as ws:
            first = [ws.receive_json() for _ in range(3)]
            self.assertEqual([m["type"] for m in first], ["quiz_state", "participants", "leaderboard"])
            self.assertEqual(first[0]["state"]["phase"], "idle")
            self.assertIsNone(first[0]["question"])

            ada = self.join(self.room_id, "Ada")
            updates = {m["type"]: m for m in (ws.receive_json() for _ in range(2))}
            self.assertEqual(updates["participants"]["participants"][0]["participant_id"], ada)
            self.assertEqual(updates["leaderboard"]["standings"][0]["participantId"], ada)

            self.client.post(f"/api/admin/rooms/{self.room_id}/start", headers=self.admin)
            message = ws.receive_json()
            while message["type"] != "quiz_state":
                message = ws.receive_json()
            self.assertEqual(message["state"]["phase"], "active")
            self.assertEqual(message["question"]["id"], "q1")
            self.assertNotIn("correct", message["question"])
            self.assertEqual(message["answered"], 0)

            self.client.post(f"/api/admin/rooms/{self.room_id}/reset", headers=self.admin)
            types = []
            while "reset" not in types:
                types.append(ws.receive_json()["type"])
            self.assertIn("reset", types)


class _RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


def _state(phase, index=0, timer=10, **extra):
    return {"phase": phase, "currentQuestionIndex": index, "timer": timer, **extra}


class FeedMessageTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.snapshot = [Question.model_validate(q) for q in QUESTIONS]
        patcher = mock.patch.object(settings, "STORE_RETRY_ATTEMPTS", 1)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_message_uses_the_notified_index(self):
        value = _state("active", index=0, timer=4, answers={"p1": {"q1": {"answer": "4"}}, "p2": {"q2": {"answer": "x"}}})
        with mock.patch.object(main.room_manager, "question_view", mock.AsyncMock(return_value=self.snapshot)):
            message = await main._quiz_state_message("r1", value)

        self.assertEqual(message["question"]["id"], "q1")
        self.assertEqual(message["state"]["timer"], 4)
        self.assertEqual(message["answered"], 1)
        self.assertNotIn("answers", message["state"])

    async def test_store_outage_drops_one_message_but_keeps_the_feed(self):
        ws = _RecordingSocket()
        queue: asyncio.Queue = asyncio.Queue()
        for item in (
            ("quiz_state", _state("active")),
            ("quiz_state", _state("idle")),
            ("participants", {"p1": {"name": "Ada", "joinedAt": 1.0}}),
        ):
            queue.put_nowait(item)

        question_view = mock.AsyncMock(side_effect=[StoreUnavailableError("down"), []])
        with mock.patch.object(main.room_manager, "question_view", question_view):
            pump = asyncio.create_task(main._pump_feed(ws, "r1", queue))
            for _ in range(100):
                if len(ws.sent) >= 3:
                    break
                await asyncio.sleep(0)
            pump.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await pump

        self.assertEqual([m["type"] for m in ws.sent], ["reset", "quiz_state", "participants"])
        self.assertEqual(ws.sent[1]["state"]["phase"], "idle")
