"""Name helpers for agent nodes."""

from __future__ import annotations

import random
import re

NAME_ALPHABET = "bcdfghjklmnpqrstvwxz0123456789"


def random_suffix(length: int = 5) -> str:
    return "".join(random.choice(NAME_ALPHABET) for _ in range(length))


def compact(value: str) -> str:
    """Strip every whitespace character."""
    return re.sub(r"\s+", "", value)


def dashed(value: str) -> str:
    """Replace whitespace runs with a single dash."""
    return re.sub(r"\s+", "-", value.strip())
