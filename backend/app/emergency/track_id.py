"""
track_id.py — Human-shareable alert tracking codes.

Format:

    EMERGENCY-{base36(epoch ms)}-{5 random base36 chars}

    Example: EMERGENCY-MF3K2Q7Z-4XK9B

The timestamp part distinguishes calls at millisecond resolution; the random
suffix (36^5 ≈ 60M values) separates calls within the same millisecond.
Uniqueness is enforced by the store, not here.
"""

from __future__ import annotations

import secrets
import time
from typing import Callable, Optional

TRACK_ID_PREFIX = "EMERGENCY"
SUFFIX_LENGTH = 5

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_base36(value: int) -> str:
    """Encode a non-negative integer in upper-case base 36."""
    if value < 0:
        raise ValueError(f"cannot encode negative value {value}")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_track_id(clock: Optional[Callable[[], float]] = None) -> str:
    """Return a new tracking code (pure function of clock + randomness)."""
    now = (clock or time.time)()
    timestamp = to_base36(int(now * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(SUFFIX_LENGTH))
    return f"{TRACK_ID_PREFIX}-{timestamp}-{suffix}"
