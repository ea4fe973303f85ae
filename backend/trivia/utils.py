import secrets
import string
import time
import uuid

ROOM_ID_ALPHABET = string.ascii_letters + string.digits


def now_ts() -> float:
    return time.time()


def new_room_id(length: int) -> str:
    return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


def new_participant_id() -> str:
    return uuid.uuid4().hex


def normalize_text(value: str) -> str:
    return value.strip().casefold()
