# sceneforge/core/errors.py
from __future__ import annotations


class SceneforgeError(Exception):
    """Base class for errors raised by the orchestration layer."""


class ProviderNotReadyError(SceneforgeError):
    pass


class ResponseParseError(SceneforgeError):
    """Model output could not be turned into the requested structure."""

    def __init__(self, message: str, raw_excerpt: str = "") -> None:
        super().__init__(message)
        self.raw_excerpt = raw_excerpt

    def __str__(self) -> str:
        base = super().__str__()
        if self.raw_excerpt:
            return f"{base}\nAI return: {self.raw_excerpt}"
        return base
