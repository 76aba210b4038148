"""Time-ordered record identifiers (UUID version 7)."""

from __future__ import annotations

import os
import threading
import time
import uuid
from datetime import datetime, timezone

_COUNTER_MAX = 0xFFF

_lock = threading.Lock()
_last_ms = 0
_counter = 0


def _next_timestamp() -> tuple[int, int]:
    """Return (unix_ms, counter) that sorts after the previously issued pair."""
    global _last_ms, _counter
    with _lock:
        now_ms = time.time_ns() // 1_000_000
        if now_ms > _last_ms:
            _last_ms = now_ms
            # 计数器高位留空，避免同一毫秒内溢出
            _counter = int.from_bytes(os.urandom(2), "big") & 0x7FF
        else:
            # 同一毫秒或时钟回拨：沿用上次时间戳并递增计数器
            _counter += 1
            if _counter > _COUNTER_MAX:
                _last_ms += 1
                _counter = 0
        return _last_ms, _counter


def new_id() -> str:
    """Return a new UUIDv7 string that sorts after every ID issued before it."""
    unix_ms, counter = _next_timestamp()
    tail = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)

    value = (unix_ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= counter << 64
    value |= 0b10 << 62
    value |= tail
    return str(uuid.UUID(int=value))


def is_valid_id(value: str) -> bool:
    """Return True when value is a UUID in canonical lowercase hyphenated form."""
    if not isinstance(value, str):
        return False
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        return False
    return str(parsed) == value


def id_timestamp(value: str) -> datetime:
    """Decode the millisecond creation time embedded in a UUIDv7."""
    parsed = uuid.UUID(value)
    if parsed.version != 7:
        raise ValueError(f"not a time-ordered id: {value}")
    unix_ms = parsed.int >> 80
    return datetime.fromtimestamp(unix_ms / 1000, tz=timezone.utc)
