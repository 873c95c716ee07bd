# sceneforge/utils/tokens.py
from __future__ import annotations

import math


def approx_tokens(text: str) -> int:
    """Rough token estimate: 1 token ~= 4 chars."""
    return int(math.ceil(len(text or "") / 4))
