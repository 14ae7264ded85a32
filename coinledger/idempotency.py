"""
Idempotency guard.

A reservation marks a key as in flight inside this process so that a duplicate
request waits for the first one instead of racing it. The durable "processed"
mark is the IdempotencyRecord the store writes inside the same commit as the
balances, so a duplicate that slips past the reservation (another worker
process) still fails the commit with DuplicateRequestError.
"""

import threading
import time
from dataclasses import dataclass
from typing import Union

import structlog

from .errors import ContentionError
from .models import IdempotencyRecord
from .store import AccountStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class AlreadyProcessed:
    record: IdempotencyRecord


class Reservation:
    """Granted reservation; release it with ``with`` once the work is done."""

    def __init__(self, guard: "IdempotencyGuard", key: str):
        self.guard = guard
        self.key = key

    def __enter__(self) -> "Reservation":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.guard.release(self.key)


class IdempotencyGuard:
    def __init__(self, store: AccountStore, wait_timeout: float = 10.0):
        self.store = store
        self.wait_timeout = wait_timeout
        self._inflight: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def reserve(self, key: str) -> Union[Reservation, AlreadyProcessed]:
        deadline = time.monotonic() + self.wait_timeout
        while True:
            record = self.store.get_record(key)
            if record is not None:
                return AlreadyProcessed(record)

            with self._lock:
                pending = self._inflight.get(key)
                if pending is None:
                    self._inflight[key] = threading.Event()
                    return Reservation(self, key)

            remaining = deadline - time.monotonic()
            if remaining <= 0 or not pending.wait(remaining):
                logger.warning("idempotency_wait_timeout", key=key)
                raise ContentionError(f"Request {key} is still in progress, retry later")

    def release(self, key: str) -> None:
        with self._lock:
            event = self._inflight.pop(key, None)
        if event is not None:
            event.set()

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight
