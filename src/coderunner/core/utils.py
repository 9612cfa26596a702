from __future__ import annotations
import uuid
from datetime import datetime, timezone


def new_job_id() -> str:
    return uuid.uuid4().hex


def new_worker_id() -> str:
    return f"worker-{uuid.uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite drops the offset on some drivers; stored values are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def truncate_bytes(data: bytes, limit: int) -> bytes:
    if limit <= 0 or len(data) <= limit:
        return data
    return data[:limit]


def decode_output(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def tail_text(text: str, limit: int = 4096) -> str:
    """Keep the end of diagnostic output, where compilers and tracebacks put the cause."""
    if len(text) <= limit:
        return text
    return "...\n" + text[-limit:]
