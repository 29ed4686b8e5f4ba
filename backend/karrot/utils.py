import secrets
import string
import time

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


class InvalidRoomCode(ValueError):
    """Raised when a room code does not have the dialable shape."""


def now_ts() -> float:
    return time.time()


def generate_room_code() -> str:
    # Collisions are not checked; every session is independent.
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def normalize_room_code(code: str) -> str:
    """Return the canonical upper-case room code or raise ``InvalidRoomCode``."""
    cleaned = (code or "").strip().upper()
    if len(cleaned) != ROOM_CODE_LENGTH:
        raise InvalidRoomCode(f"The room code must be exactly {ROOM_CODE_LENGTH} characters.")
    if any(ch not in ROOM_CODE_ALPHABET for ch in cleaned):
        raise InvalidRoomCode("The room code may only contain letters and digits.")
    return cleaned


def is_valid_room_code(code: str) -> bool:
    try:
        normalize_room_code(code)
    except InvalidRoomCode:
        return False
    return True
