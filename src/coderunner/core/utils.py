from __future__ import annotations
import uuid
from datetime import datetime, timezone


def new_job_id() -> str:
    # uuid4 ids stay collision-free across restarts
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
