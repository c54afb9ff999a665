from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from ..errors import InvalidIdentity


MAX_IDENTITY_LENGTH = 128
DTMF_RE = re.compile(r"^[0-9A-D*#]$")


@dataclass(frozen=True, slots=True)
class UserIdentity:
    """Opaque client-supplied identity. Not authenticated, only sanity-checked."""

    value: Any
    max_length: int = MAX_IDENTITY_LENGTH

    def __post_init__(self) -> None:
        v = self.value
        if not isinstance(v, str):
            raise InvalidIdentity("Identity must be a string")
        if not v.strip():
            raise InvalidIdentity("Identity must not be empty")
        if len(v) > self.max_length:
            raise InvalidIdentity(f"Identity must be at most {self.max_length} chars")

    def __str__(self) -> str:  # convenience
        return self.value


def is_dtmf_digit(value: str) -> bool:
    return bool(DTMF_RE.match(value))
