"""Shared helpers for the chunkflow test suite."""
from datetime import datetime, timedelta, UTC

from chunkflow.common.exceptions import TransientError


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def no_sleep(seconds: float) -> None:
    pass


# --- Processors resolved by dotted path in tests ---


def count_chunk_items(job, chunk):
    return {"matched": chunk.size, "new": 0}


async def async_count_chunk_items(job, chunk):
    return {"matched": chunk.size}


def echo_task(task):
    return {"echo": task.payload}


def flaky_network_task(task):
    raise TransientError("Connection reset by peer (ECONNRESET)")
