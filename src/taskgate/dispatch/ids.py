"""Collision-resistant task identifiers."""

from __future__ import annotations

import itertools
import threading
from datetime import datetime
from uuid import uuid4

from taskgate.timeutil import utc_now

_SEQUENCE = itertools.count(1)
_SEQUENCE_LOCK = threading.Lock()
_SEQUENCE_MODULUS = 1_000_000


def new_task_id(*, now: datetime | None = None) -> str:
    """Build ``task-<epoch ms>-<sequence>-<random>``.

    Ids sort by creation time. The in-process sequence separates callers
    within one millisecond; the random suffix separates processes.
    """

    moment = now or utc_now()
    millis = int(moment.timestamp() * 1000)
    with _SEQUENCE_LOCK:
        sequence = next(_SEQUENCE) % _SEQUENCE_MODULUS
    return f"task-{millis:013d}-{sequence:06d}-{uuid4().hex[:8]}"
