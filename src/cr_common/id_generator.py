"""ID generation for credit entries.

Two kinds of identifiers:
  - credit id: random UUID4 hex, opaque primary key
  - transaction_no: snowflake-style, time-ordered, unique across processes
    as long as each process uses a distinct worker_id
"""

import os
import threading
import time
import uuid


class SnowflakeIdGenerator:
    """Snowflake ID generator.

    Layout (63 bits used):
      - 41 bits: millisecond timestamp (since custom epoch)
      - 10 bits: worker_id (0-1023)
      - 12 bits: sequence (0-4095 per millisecond)
    """

    _EPOCH_MS = 1_700_000_000_000
    _WORKER_BITS = 10
    _SEQUENCE_BITS = 12
    _MAX_SEQUENCE = (1 << _SEQUENCE_BITS) - 1

    def __init__(self, worker_id: int = 0) -> None:
        if not (0 <= worker_id < (1 << self._WORKER_BITS)):
            raise ValueError(f"worker_id must be 0-{(1 << self._WORKER_BITS) - 1}")
        self._worker_id = worker_id
        self._sequence = 0
        self._last_ms = -1
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            now_ms = self._now_ms()
            if now_ms < self._last_ms:
                # clock moved backwards; stay on the last timestamp
                now_ms = self._last_ms
            if now_ms == self._last_ms:
                self._sequence = (self._sequence + 1) & self._MAX_SEQUENCE
                if self._sequence == 0:
                    now_ms = self._wait_until_after(now_ms)
            else:
                self._sequence = 0

            self._last_ms = now_ms
            value = (
                ((now_ms - self._EPOCH_MS) << (self._WORKER_BITS + self._SEQUENCE_BITS))
                | (self._worker_id << self._SEQUENCE_BITS)
                | self._sequence
            )
            return str(value)

    def _now_ms(self) -> int:
        return int(time.time() * 1000)

    def _wait_until_after(self, last_ms: int) -> int:
        now_ms = self._now_ms()
        while now_ms <= last_ms:
            now_ms = self._now_ms()
        return now_ms


def _worker_id_from_env() -> int:
    # Spread workers by pid when no explicit id is configured
    raw = os.environ.get("CREDIT_WORKER_ID")
    if raw is not None and raw.strip().isdigit():
        return int(raw) % 1024
    return os.getpid() % 1024


_default_generator = SnowflakeIdGenerator(_worker_id_from_env())


def generate_transaction_no() -> str:
    """Next snowflake transaction_no from the process-wide generator."""
    return _default_generator.next_id()


def generate_credit_id() -> str:
    return uuid.uuid4().hex
