import time
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def is_valid_id(value: Any) -> bool:
    # ids are uuid4().hex everywhere
    return isinstance(value, str) and _ID_RE.match(value) is not None


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def total_pages(count: int, limit: int) -> int:
    return -(-count // limit) if limit > 0 else 0
