# sceneforge/orchestration/completion.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from sceneforge.core.errors import ProviderNotReadyError, ResponseParseError
from sceneforge.core.settings import AppSettings, get_settings
from sceneforge.orchestration.sanitizer import excerpt, parse_json_response
from sceneforge.providers.base import CompletionRequest, CompletionResponse, Provider
from sceneforge.storage.response_cache import ResponseCache
from sceneforge.storage.scene_locks import SceneLockRegistry
from sceneforge.utils.cache_key import derive_cache_key

log = logging.getLogger("sceneforge.completion")

T = TypeVar("T")

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

FALLBACK_MODEL = "gpt-4.1"

PROVIDER_DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-4.1",
    "anthropic": "claude-haiku-4.5",
    "mistral": "mistral-large-latest",
    "deepseek": "deepseek-chat",
    "glm": "glm-4.5-air",
    "google": "gemini-2.5-flash",
    "qwen": "qwen3-max",
    "githubmodels": "gpt-4.1-mini",
    "grok": "grok-4.1-fast",
    "openrouter": "x-ai/grok-4.1-fast:free",
}

STRUCTURED_INSTRUCTION = (
    "Return your response in valid JSON format, following the provided output schema, "
    "without adding explanations or preambles."
)
STRUCTURED_TEMPERATURE = 0.3

READY_STATE = "ready"
NO_PROVIDER_REASON = "no provider configured"


class ChatMessage(BaseModel):
    role: str
    content: str


class CompletionService:
    """Cached, sanitized access to a text provider plus per-scene locking.

    Owns nothing global: the provider, cache and lock registry are injected
    and shared by whoever builds the service.
    """

    def __init__(
        self,
        provider: Optional[Provider],
        cache: ResponseCache,
        locks: SceneLockRegistry,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self.cache = cache
        self.locks = locks
        self.settings = settings or get_settings()
        self._provider_lock = threading.Lock()
        self._provider = provider
        self._active_default_model = ""
        self._unready_reason = NO_PROVIDER_REASON

    @classmethod
    def from_settings(cls, provider: Optional[Provider], settings: Optional[AppSettings] = None) -> "CompletionService":
        s = settings or get_settings()
        return cls(
            provider=provider,
            cache=ResponseCache.from_settings(s),
            locks=SceneLockRegistry.from_settings(s),
            settings=s,
        )

    # provider state
    @property
    def provider(self) -> Optional[Provider]:
        with self._provider_lock:
            return self._provider

    @property
    def provider_name(self) -> str:
        provider = self.provider
        if provider is not None and getattr(provider, "name", ""):
            return provider.name
        return self.settings.provider_key

    @property
    def is_ready(self) -> bool:
        return self.provider is not None

    @property
    def ready_state(self) -> str:
        """``"ready"`` or a human-readable reason why completions cannot run."""
        with self._provider_lock:
            return READY_STATE if self._provider is not None else self._unready_reason

    def provider_status(self) -> tuple[bool, str]:
        with self._provider_lock:
            if self._provider is not None:
                return True, READY_STATE
            return False, self._unready_reason

    def update_provider(self, provider: Optional[Provider], reason: str = "") -> None:
        """Swap the provider; cached replies of the previous one are dropped.

        Passing ``None`` takes the service offline; ``reason`` is what
        ``ready_state`` and the not-ready error report afterwards.
        """
        with self._provider_lock:
            self._provider = provider
            self._active_default_model = ""
            self._unready_reason = unready = (reason or "").strip() or NO_PROVIDER_REASON
        self.cache.clear()
        if provider is None:
            log.warning({"event": "provider.unavailable", "reason": unready})
        else:
            log.info({"event": "provider.update", "provider": getattr(provider, "name", "")})

    def set_default_model(self, model: str) -> None:
        with self._provider_lock:
            self._active_default_model = (model or "").strip()

    def _require_provider(self) -> Provider:
        with self._provider_lock:
            provider = self._provider
            reason = self._unready_reason
        if provider is None:
            raise ProviderNotReadyError(f"LLM service not ready: {reason}")
        return provider

    def resolve_model(self, requested: str = "") -> str:
        if requested and requested.strip():
            return requested.strip()

        with self._provider_lock:
            provider = self._provider
            active = self._active_default_model
        if active:
            return active

        if provider is not None:
            for model in provider.supported_models()[:1]:
                if model and model.strip():
                    return model.strip()

        if self.settings.llm_default_model.strip():
            return self.settings.llm_default_model.strip()

        default = PROVIDER_DEFAULT_MODELS.get(self.provider_name.lower(), "").strip()
        return default or FALLBACK_MODEL

    @property
    def default_model(self) -> str:
        return self.resolve_model("")

    def cache_key(self, prompt: str, system_prompt: str, model: str) -> str:
        return derive_cache_key(prompt, system_prompt, model, self.provider_name)

    # completions
    async def complete_text(
        self,
        prompt: str,
        system_prompt: str = "",
        model: str = "",
        temperature: float = 0.7,
        max_tokens: int = 0,
    ) -> CompletionResponse:
        provider = self._require_provider()
        resolved = self.resolve_model(model)
        key = self.cache_key(prompt, system_prompt, resolved)

        cached, found = self.cache.get_json(key)
        if found:
            try:
                resp = CompletionResponse.model_validate(cached)
            except ValidationError:
                log.warning({"event": "cache.shape_mismatch", "cache_key_prefix": key[:8]})
            else:
                log.info({"event": "cache.hit", "cache_key_prefix": key[:8]})
                return resp

        resp = await provider.complete_text(
            CompletionRequest(
                prompt=prompt,
                system_prompt=system_prompt,
                model=resolved,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        )
        self.cache.put(key, resp.model_dump_json().encode("utf-8"))
        log.info({"event": "cache.save", "cache_key_prefix": key[:8], "tokens_used": resp.tokens_used})
        return resp

    async def complete_structured(
        self,
        prompt: str,
        system_prompt: str,
        schema: Union[Type[T], Any],
        model: str = "",
        max_tokens: int = 0,
    ) -> T:
        """Ask for JSON, repair the reply and validate it against ``schema``.

        ``schema`` is anything pydantic's TypeAdapter accepts: a model class,
        ``list[Model]``, ``dict[str, Any]`` and so on.
        """
        provider = self._require_provider()
        adapter: TypeAdapter[Any] = TypeAdapter(schema)
        resolved = self.resolve_model(model)

        structured_system = f"{system_prompt}\n\n{STRUCTURED_INSTRUCTION}" if system_prompt else STRUCTURED_INSTRUCTION
        key = self.cache_key(prompt, structured_system, resolved)

        cached, found = self.cache.get_json(key)
        if found:
            try:
                result = adapter.validate_python(cached)
            except ValidationError:
                log.warning({"event": "cache.shape_mismatch", "cache_key_prefix": key[:8]})
            else:
                log.info({"event": "cache.hit", "cache_key_prefix": key[:8]})
                return result

        resp = await provider.complete_text(
            CompletionRequest(
                prompt=prompt,
                system_prompt=structured_system,
                model=resolved,
                temperature=STRUCTURED_TEMPERATURE,
                max_tokens=max_tokens,
            )
        )

        data = parse_json_response(resp.text)
        try:
            result = adapter.validate_python(data)
        except ValidationError as e:
            raise ResponseParseError(
                f"AI response does not match the expected structure: {e.error_count()} error(s)",
                raw_excerpt=excerpt(resp.text),
            ) from e

        self.cache.put(key, adapter.dump_json(result))
        log.info({"event": "cache.save", "cache_key_prefix": key[:8], "tokens_used": resp.tokens_used})
        return result

    async def chat_completion(
        self,
        messages: Iterable[Union[ChatMessage, Mapping[str, str]]],
        model: str = "",
        temperature: float = 0.7,
        max_tokens: int = 0,
    ) -> CompletionResponse:
        system_prompt, prompt = fold_messages(messages)
        return await self.complete_text(
            prompt,
            system_prompt=system_prompt,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    # scene locking
    def with_scene(self, scene_id: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self.locks.execute_exclusive(scene_id, fn, *args, **kwargs)

    def read_scene(self, scene_id: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self.locks.execute_shared(scene_id, fn, *args, **kwargs)

    def close(self) -> None:
        self.locks.close()


def fold_messages(messages: Iterable[Union[ChatMessage, Mapping[str, str]]]) -> tuple[str, str]:
    """Collapse a chat transcript into a (system_prompt, prompt) pair.

    The last system and user messages win; assistant turns are kept as
    conversation history in front of the user input.
    """
    system_content = ""
    user_content = ""
    history: List[str] = []
    for raw in messages:
        msg = raw if isinstance(raw, ChatMessage) else ChatMessage.model_validate(raw)
        role = msg.role.strip().lower()
        if role == ROLE_SYSTEM:
            system_content = msg.content
        elif role == ROLE_USER:
            user_content = msg.content
        elif role == ROLE_ASSISTANT:
            history.append(msg.content)
        else:
            log.warning({"event": "chat.unknown_role", "role": msg.role})

    if history:
        conversation = "\n\n".join(history)
        user_content = f"Conversation history:\n{conversation}\n\nCurrent user input: {user_content}"
    return system_content, user_content
