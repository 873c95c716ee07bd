# sceneforge/utils/cache_key.py
from __future__ import annotations

import hashlib
from typing import Optional

# Long enough that it will not show up verbatim inside prompt prose.
KEY_SEPARATOR = ":::"


def derive_cache_key(
    prompt: Optional[str],
    system_prompt: Optional[str],
    model: Optional[str],
    provider_name: Optional[str],
) -> str:
    """Fingerprint a completion request as a 32-char hex digest.

    Field order is fixed, so the same tuple always maps to the same key across
    processes. The digest is a content hash, not a security boundary.
    """
    parts = (prompt or "", system_prompt or "", model or "", provider_name or "")
    joined = KEY_SEPARATOR.join(parts)
    return hashlib.md5(joined.encode("utf-8")).hexdigest()
