# dupkite/clock.py
# Wall-clock helpers; services take a clock callable so tests can freeze time

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def now_ms(clock: Clock = utcnow) -> int:
    """Current timestamp in milliseconds"""
    return int(clock().timestamp() * 1000)
