import time
import uuid


def new_session_id() -> str:
    # UUID4 is fine for session IDs
    return str(uuid.uuid4())


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def now_ms() -> int:
    return int(time.time() * 1000)
