from __future__ import annotations

import secrets
import time

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
# 58**22 > 2**128, so every 128-bit id fits in 22 digits.
TASK_ID_LENGTH = 22


def new_task_id(now_ms: int | None = None) -> str:
    """Time-ordered task id: a UUIDv7 value (ms clock, version, variant, random) in base58."""
    ts_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    value = (ts_ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= secrets.randbits(12) << 64
    value |= 0b10 << 62
    value |= secrets.randbits(62)

    digits: list[str] = []
    for _ in range(TASK_ID_LENGTH):
        value, rem = divmod(value, 58)
        digits.append(BASE58_ALPHABET[rem])
    return "".join(reversed(digits))
