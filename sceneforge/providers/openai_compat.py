# sceneforge/providers/openai_compat.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from sceneforge.core.settings import get_settings
from sceneforge.providers.base import CompletionRequest, CompletionResponse
from sceneforge.utils.tokens import approx_tokens

log = logging.getLogger("sceneforge.provider")

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class OpenAICompatProvider:
    """Provider for servers speaking the OpenAI ``/v1/chat/completions`` dialect."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        name: str = "openai",
        models: Optional[List[str]] = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.name = name
        self.timeout = timeout
        self._models = list(models or [])

    def supported_models(self) -> List[str]:
        return list(self._models)

    def set_custom_models(self, models: List[str]) -> None:
        self._models = [m.strip() for m in models if m and m.strip()]

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=self._headers())

    async def complete_text(self, request: CompletionRequest) -> CompletionResponse:
        url_chat = f"{self.base_url}/v1/chat/completions"
        url_comp = f"{self.base_url}/v1/completions"
        payload_chat: Dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": request.prompt},
            ],
            "temperature": request.temperature,
        }
        if request.max_tokens > 0:
            payload_chat["max_tokens"] = request.max_tokens

        log.debug({"event": "provider.request", "provider": self.name, "model": request.model})
        # Try chat endpoint first
        try:
            resp = await self._post_json(url_chat, payload_chat)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            # Fallback to non-chat completions if chat endpoint is not available (404)
            if e.response is None or e.response.status_code != 404:
                raise
            payload_comp: Dict[str, Any] = {
                "model": request.model,
                "prompt": f"{request.system_prompt}\n{request.prompt}".strip(),
                "temperature": request.temperature,
            }
            if request.max_tokens > 0:
                payload_comp["max_tokens"] = request.max_tokens
            resp2 = await self._post_json(url_comp, payload_comp)
            resp2.raise_for_status()
            data = resp2.json()

        choice: Dict[str, Any] = (data.get("choices") or [{}])[0]
        text: str = (choice.get("message") or {}).get("content") or choice.get("text") or ""

        raw_usage: Optional[Dict[str, Any]] = data.get("usage")
        if raw_usage is None:
            # approximate from provided inputs
            inp = approx_tokens(request.system_prompt + request.prompt)
            out = approx_tokens(text)
            tot = inp + out
        else:
            inp = int(raw_usage.get("prompt_tokens", raw_usage.get("input_tokens", 0)) or 0)
            out = int(raw_usage.get("completion_tokens", raw_usage.get("output_tokens", 0)) or 0)
            tot = int(raw_usage.get("total_tokens", inp + out) or (inp + out))

        return CompletionResponse(
            text=text,
            finish_reason=choice.get("finish_reason") or "",
            tokens_used=tot,
            prompt_tokens=inp,
            output_tokens=out,
            model_name=data.get("model") or request.model,
            provider_name=self.name,
        )


def get_openai_compat_provider() -> OpenAICompatProvider:
    settings = get_settings()
    if not settings.llm_base_url:
        raise RuntimeError("LLM_BASE_URL is not configured")
    models = [settings.llm_default_model] if settings.llm_default_model else None
    return OpenAICompatProvider(
        base_url=str(settings.llm_base_url),
        api_key=settings.llm_api_key,
        name=settings.provider_key,
        models=models,
        timeout=settings.llm_timeout_sec,
    )
