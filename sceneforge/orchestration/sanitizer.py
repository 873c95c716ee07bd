# sceneforge/orchestration/sanitizer.py
from __future__ import annotations

import json
import re
import unicodedata
from typing import Any, Dict

from sceneforge.core.errors import ResponseParseError


_FENCE_RX = re.compile(r"```(?:json)?")

_DROP_CHARS = frozenset("\u200b\u200c\u200d\u2060\ufeff")
_KEEP_CONTROLS = frozenset("\n\r\t")
_CHAR_MAP = {
    "\u00a0": " ",
    "\u2028": "\n",
    "\u2029": "\n",
}

# Full-width / CJK structural punctuation seen outside of strings
STRUCTURAL_PUNCTUATION: Dict[str, str] = {
    "：": ":",
    "﹕": ":",
    "，": ",",
    "﹐": ",",
    "；": ";",
    "﹔": ";",
    "【": "[",
    "】": "]",
    "［": "[",
    "］": "]",
    "｛": "{",
    "｝": "}",
    "（": "(",
    "）": ")",
}

# opening (or stray closing) glyph -> glyph that ends the string
QUOTE_PAIRS: Dict[str, str] = {
    "“": "”",
    "”": "”",
    "„": "”",
    "‟": "”",
    "「": "」",
    "」": "」",
    "『": "』",
    "』": "』",
    "﹁": "﹂",
    "﹂": "﹂",
}

_OPENERS = "[{［｛"
# usually a CJK heading such as 【结果】, only a container when nothing else is
_HEADING_OPENERS = "【"


def _strip_noise(raw: str) -> str:
    chars = []
    for ch in raw:
        if ch in _DROP_CHARS:
            continue
        if ch in _KEEP_CONTROLS:
            chars.append(ch)
            continue
        if unicodedata.category(ch) == "Cc":
            continue
        chars.append(_CHAR_MAP.get(ch, ch))
    text = "".join(chars)
    while "```" in text:
        text = _FENCE_RX.sub("", text)
    return text.strip()


def _find_start(text: str) -> int:
    positions = [i for i in (text.find(c) for c in _OPENERS) if i != -1]
    if not positions:
        positions = [i for i in (text.find(c) for c in _HEADING_OPENERS) if i != -1]
    return min(positions) if positions else -1


def normalize_structure(text: str) -> str:
    """Rewrite everything outside string literals into plain ASCII JSON punctuation.

    Paired typographic quotes become ``"`` and open a string that ends on the
    pair's closing glyph (or an ASCII quote). Any other non-ASCII character
    outside a string is dropped; whitespace is kept.
    """
    out = []
    in_string = False
    escaped = False
    closing = '"'

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
                out.append(ch)
                continue
            if ch == "\\":
                escaped = True
                out.append(ch)
                continue
            if ch == closing or ch == '"':
                in_string = False
                closing = '"'
                out.append('"')
                continue
            out.append(ch)
            continue

        if ch in STRUCTURAL_PUNCTUATION:
            out.append(STRUCTURAL_PUNCTUATION[ch])
        elif ch in QUOTE_PAIRS:
            in_string = True
            closing = QUOTE_PAIRS[ch]
            out.append('"')
        elif ch == '"':
            in_string = True
            closing = '"'
            out.append(ch)
        elif ord(ch) > 127 and not ch.isspace():
            continue
        else:
            out.append(ch)

    return "".join(out)


def _balanced_end(text: str) -> int:
    """Index of the bracket that closes the leading container, or -1."""
    if text[0] == "[":
        opener, closer = "[", "]"
    else:
        opener, closer = "{", "}"

    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
        if depth == 0:
            return i

    return text.rfind(closer)


def _sanitize_once(raw: str) -> str:
    text = _strip_noise(raw)

    start = _find_start(text)
    if start == -1:
        return text

    text = normalize_structure(text[start:].strip())
    if not text:
        return text

    end = _balanced_end(text)
    if end == -1:
        return text.strip()
    return text[: end + 1].strip()


def sanitize(raw: str) -> str:
    """Extract the best-effort JSON fragment from raw model output.

    Never raises. Text without any opening bracket comes back with only the
    noise removed; deciding whether the result parses is left to the caller.
    Each pass can only shorten the text or map characters onto ASCII, so the
    loop reaches a fixed point and ``sanitize(sanitize(x)) == sanitize(x)``.
    """
    if not raw:
        return raw or ""

    text = _sanitize_once(raw)
    while True:
        again = _sanitize_once(text)
        if again == text:
            return text
        text = again


def strip_code_fences(raw: str) -> str:
    """Lightweight cleanup: drop a surrounding Markdown fence and stray backticks."""
    cleaned = (raw or "").strip()
    if not cleaned:
        return cleaned

    if cleaned.startswith("```"):
        cleaned = cleaned[3:].strip()
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:].strip()
        idx = cleaned.rfind("```")
        if idx != -1:
            cleaned = cleaned[:idx]

    return cleaned.strip().strip("`").strip()


def excerpt(text: str, limit: int = 120) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def parse_json_response(raw: str) -> Any:
    """Sanitize model output and decode it, raising ResponseParseError on failure."""
    cleaned = sanitize(raw)
    try:
        return json.loads(cleaned)
    except ValueError as e:
        raise ResponseParseError(
            f"failed to parse AI response into structured data: {e}",
            raw_excerpt=excerpt(raw or ""),
        ) from e
