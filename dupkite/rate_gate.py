# dupkite/rate_gate.py
# Per-client submission cooldown backed by a key-value store with TTL

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .clock import Clock, utcnow
from .errors import RateLimited
from .logging_config import get_logger

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"
KEY_PREFIX = "dupkite-submit:"


def identify(headers: Mapping[str, str]) -> str:
    """Best-effort client identifier from proxy headers"""
    forwarded = headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    return real_ip or UNKNOWN_CLIENT


class KeyValueStore:
    """Minimal expiring key-value interface the gate depends on"""

    def get(self, key: str) -> Optional[float]:
        raise NotImplementedError

    def set(self, key: str, value: float, ttl: float) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store; resets on restart and is not shared across instances"""

    def __init__(self, clock: Clock = utcnow, sweep_every: int = 256):
        self._clock = clock
        self._data: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()
        self._sweep_every = sweep_every
        self._writes = 0

    def get(self, key: str) -> Optional[float]:
        now = self._clock().timestamp()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: float, ttl: float) -> None:
        now = self._clock().timestamp()
        with self._lock:
            self._data[key] = (value, now + ttl)
            self._writes += 1
            if self._writes % self._sweep_every == 0:
                self._sweep(now)

    def _sweep(self, now: float) -> None:
        """Drop expired entries of clients that never came back"""
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


@dataclass(frozen=True)
class Reservation:
    client_id: str
    recorded_at: Optional[float]  # None when the client bypassed the gate

    @property
    def exempt(self) -> bool:
        return self.recorded_at is None


class RateGate:
    """One successful submission per client per cooldown window

    ``reserve`` is the atomic check-and-record. A submission that fails after
    reserving hands the reservation back through ``release`` so that only
    completed submissions start the cooldown.
    """

    def __init__(
        self,
        store: KeyValueStore,
        window_seconds: float = 300,
        clock: Clock = utcnow,
        exempt: Iterable[str] = (),
        enabled: bool = True,
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.clock = clock
        self.exempt = frozenset(exempt)
        self.enabled = enabled
        self._lock = threading.Lock()

    def is_exempt(self, client_id: str) -> bool:
        return not self.enabled or client_id in self.exempt

    def reserve(self, client_id: str) -> Reservation:
        if self.is_exempt(client_id):
            return Reservation(client_id=client_id, recorded_at=None)

        key = KEY_PREFIX + client_id
        with self._lock:
            now = self.clock().timestamp()
            last = self.store.get(key)
            if last is not None and now - last < self.window_seconds:
                logger.warning(
                    f"Submission rate limited ({int(now - last)}s since last)",
                    extra={"client_id": client_id}
                )
                raise RateLimited()
            self.store.set(key, now, ttl=self.window_seconds)
        return Reservation(client_id=client_id, recorded_at=now)

    def release(self, reservation: Reservation) -> None:
        """Undo a reservation whose submission did not complete"""
        if reservation.exempt:
            return
        key = KEY_PREFIX + reservation.client_id
        with self._lock:
            if self.store.get(key) == reservation.recorded_at:
                self.store.delete(key)

    def check_and_record(self, client_id: str) -> bool:
        """True when allowed (and recorded), False when limited"""
        try:
            self.reserve(client_id)
        except RateLimited:
            return False
        return True
