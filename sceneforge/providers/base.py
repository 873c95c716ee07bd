# sceneforge/providers/base.py
from __future__ import annotations

from typing import List, Protocol

from pydantic import BaseModel


class CompletionRequest(BaseModel):
    prompt: str
    system_prompt: str = ""
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 0


class CompletionResponse(BaseModel):
    text: str
    finish_reason: str = ""
    tokens_used: int = 0
    prompt_tokens: int = 0
    output_tokens: int = 0
    model_name: str = ""
    provider_name: str = ""


class Provider(Protocol):
    name: str

    def supported_models(self) -> List[str]:
        ...

    async def complete_text(self, request: CompletionRequest) -> CompletionResponse:
        """Run one completion. May be slow and may raise; callers do not retry.

        ``max_tokens == 0`` leaves the limit to the provider.
        """
        ...
