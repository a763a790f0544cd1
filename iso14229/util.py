"""Millisecond clock and small protocol helpers."""

import time

_U32_MASK = 0xFFFFFFFF
_I32_SIGN = 0x80000000


def millis() -> int:
    """Return the wall-clock time in milliseconds, truncated to 32 bits."""
    return (time.time_ns() // 1_000_000) & _U32_MASK


def time_after(a: int, b: int) -> bool:
    """Return True if 32-bit timestamp ``a`` is after ``b``, tolerating wrap-around."""
    return bool(((b - a) & _U32_MASK) & _I32_SIGN)


def security_access_level_is_reserved(security_level: int) -> bool:
    """Return True if a security-access sub-function level is reserved."""
    level = security_level & 0x3F
    return level == 0 or (0x43 <= level and level >= 0x5E) or level == 0x7F