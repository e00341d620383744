"""Prefixed ULID identifiers for edits, conflicts and resolutions.

ULIDs sort lexicographically by creation time, so ``edit_id`` can serve as
the deterministic tie-break after ``submitted_at``.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_ULID_RANDOM_MAX: Final[int] = (1 << 80) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

EDIT_ID_PREFIX: Final[str] = "edt"
CONFLICT_ID_PREFIX: Final[str] = "cfl"
RESOLUTION_ID_PREFIX: Final[str] = "res"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]


def _encode_crockford_base32(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {ts_ms}")
    random_bytes = (randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES)
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return {ULID_RANDOM_BYTES} bytes")
    return _encode_crockford_base32((ts_ms << 80) | int.from_bytes(random_bytes, "big"), ULID_LENGTH)


def parse_ulid_timestamp_ms(s: str) -> int:
    """Extract the 48-bit millisecond timestamp from a ULID."""
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid must be {ULID_LENGTH} characters, got {len(s)}")
    value = 0
    for char in s.upper():
        if char not in _DECODE_TABLE:
            raise ValueError(f"invalid ulid character {char!r}")
        value = (value << 5) | _DECODE_TABLE[char]
    return value >> 80


class IdFactory:
    """
    Monotonic prefixed-ULID generator.

    Within the same millisecond the random component is incremented rather
    than redrawn, so ids issued by one factory are strictly increasing.

    Example:
        >>> ids = IdFactory()
        >>> a, b = ids.edit_id(), ids.edit_id()
        >>> a < b
        True
    """

    def __init__(
        self,
        clock_ms: Callable[[], int] | None = None,
        randbytes: _RandBytes | None = None,
    ) -> None:
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._randbytes = randbytes or secrets.token_bytes
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def ulid(self) -> str:
        with self._lock:
            ts_ms = max(self._clock_ms(), self._last_ms)
            if ts_ms == self._last_ms:
                if self._last_random >= _ULID_RANDOM_MAX:
                    ts_ms += 1
                    self._last_random = int.from_bytes(self._randbytes(ULID_RANDOM_BYTES), "big")
                else:
                    self._last_random += 1
            else:
                self._last_random = int.from_bytes(self._randbytes(ULID_RANDOM_BYTES), "big")
            self._last_ms = ts_ms
            return _encode_crockford_base32((ts_ms << 80) | self._last_random, ULID_LENGTH)

    def prefixed(self, prefix: str) -> str:
        if not prefix or not prefix.isalnum():
            raise ValueError(f"invalid id prefix: {prefix!r}")
        return f"{prefix}{_PREFIX_SEPARATOR}{self.ulid()}"

    def edit_id(self) -> str:
        return self.prefixed(EDIT_ID_PREFIX)

    def conflict_id(self) -> str:
        return self.prefixed(CONFLICT_ID_PREFIX)

    def resolution_id(self) -> str:
        return self.prefixed(RESOLUTION_ID_PREFIX)
