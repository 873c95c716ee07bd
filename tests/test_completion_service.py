# tests/test_completion_service.py
from __future__ import annotations

from typing import List

import pytest
from pydantic import BaseModel

from sceneforge.core.errors import ProviderNotReadyError, ResponseParseError
from sceneforge.orchestration.completion import (
    FALLBACK_MODEL,
    STRUCTURED_INSTRUCTION,
    CompletionService,
    fold_messages,
)
from sceneforge.providers.base import CompletionRequest, CompletionResponse
from sceneforge.storage.response_cache import ResponseCache
from sceneforge.storage.scene_locks import SceneLockRegistry


class DummySettings:
    provider_key = "openai"
    llm_default_model = ""


class FakeProvider:
    def __init__(self, replies: List[str], name: str = "fake", models: List[str] | None = None) -> None:
        self.replies = list(replies)
        self.name = name
        self.models = ["fake-model"] if models is None else models
        self.requests: List[CompletionRequest] = []

    def supported_models(self) -> List[str]:
        return list(self.models)

    async def complete_text(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        text = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return CompletionResponse(
            text=text,
            finish_reason="stop",
            tokens_used=42,
            model_name=request.model,
            provider_name=self.name,
        )


class SceneInfo(BaseModel):
    name: str
    description: str
    themes: List[str] = []


class CharacterInfo(BaseModel):
    name: str
    role: str


def make_service(provider, settings=None) -> CompletionService:
    return CompletionService(
        provider=provider,
        cache=ResponseCache(),
        locks=SceneLockRegistry(autostart=False),
        settings=settings or DummySettings(),
    )


@pytest.mark.asyncio
async def test_complete_text_hits_cache_on_repeat() -> None:
    provider = FakeProvider(["The fog rolls in."])
    svc = make_service(provider)

    first = await svc.complete_text("Describe the harbor", system_prompt="Narrator")
    second = await svc.complete_text("Describe the harbor", system_prompt="Narrator")

    assert first.text == second.text == "The fog rolls in."
    assert second.tokens_used == 42
    assert len(provider.requests) == 1
    assert provider.requests[0].model == "fake-model"
    assert len(svc.cache) == 1


@pytest.mark.asyncio
async def test_different_prompts_miss_cache() -> None:
    provider = FakeProvider(["one", "two"])
    svc = make_service(provider)
    assert (await svc.complete_text("a")).text == "one"
    assert (await svc.complete_text("b")).text == "two"
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_complete_structured_repairs_noisy_reply() -> None:
    reply = (
        "Sure! Here is the scene:\n```json\n"
        "{“name”: “Harbor”，\"description\"：\"Fog and gulls\", \"themes\": [\"loss\"]}\n"
        "```\nLet me know if you need more."
    )
    provider = FakeProvider([reply])
    svc = make_service(provider)

    scene = await svc.complete_structured("Extract the scene", "You read novels", SceneInfo)

    assert scene == SceneInfo(name="Harbor", description="Fog and gulls", themes=["loss"])
    req = provider.requests[0]
    assert req.temperature == pytest.approx(0.3)
    assert req.system_prompt.startswith("You read novels\n\n")
    assert req.system_prompt.endswith(STRUCTURED_INSTRUCTION)

    again = await svc.complete_structured("Extract the scene", "You read novels", SceneInfo)
    assert again == scene
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_complete_structured_list_schema() -> None:
    provider = FakeProvider(['Characters: [{"name": "Ada", "role": "captain"}, {"name": "Bo", "role": "cook"}] end'])
    svc = make_service(provider)

    cast = await svc.complete_structured("Extract characters", "", List[CharacterInfo])

    assert [c.name for c in cast] == ["Ada", "Bo"]
    assert provider.requests[0].system_prompt == STRUCTURED_INSTRUCTION


@pytest.mark.asyncio
async def test_complete_structured_unparsable_raises_and_caches_nothing() -> None:
    provider = FakeProvider(["I'd rather tell you a story instead."])
    svc = make_service(provider)

    with pytest.raises(ResponseParseError) as ei:
        await svc.complete_structured("Extract the scene", "", SceneInfo)
    assert "story instead" in ei.value.raw_excerpt
    assert len(svc.cache) == 0


@pytest.mark.asyncio
async def test_complete_structured_wrong_shape_raises() -> None:
    provider = FakeProvider(['{"title": "no name field"}'])
    svc = make_service(provider)

    with pytest.raises(ResponseParseError):
        await svc.complete_structured("Extract the scene", "", SceneInfo)
    assert len(svc.cache) == 0


@pytest.mark.asyncio
async def test_no_provider_is_not_ready() -> None:
    svc = make_service(None)
    assert not svc.is_ready
    with pytest.raises(ProviderNotReadyError):
        await svc.complete_text("hello")


@pytest.mark.asyncio
async def test_not_ready_error_carries_the_reason() -> None:
    svc = make_service(None)
    assert svc.ready_state == "no provider configured"
    assert svc.provider_status() == (False, "no provider configured")
    with pytest.raises(ProviderNotReadyError, match="LLM service not ready: no provider configured"):
        await svc.complete_text("hello")

    svc.update_provider(FakeProvider(["x"]))
    assert svc.is_ready
    assert svc.ready_state == "ready"
    assert svc.provider_status() == (True, "ready")

    svc.update_provider(None, reason="API key not configured")
    assert not svc.is_ready
    assert svc.ready_state == "API key not configured"
    with pytest.raises(ProviderNotReadyError, match="LLM service not ready: API key not configured"):
        await svc.complete_structured("Extract the scene", "", SceneInfo)

@pytest.mark.asyncio
async def test_chat_completion_folds_history() -> None:
    provider = FakeProvider(["ok"])
    svc = make_service(provider)

    await svc.chat_completion(
        [
            {"role": "system", "content": "You are the game master."},
            {"role": "assistant", "content": "You stand at the gate."},
            {"role": "narrator", "content": "ignored"},
            {"role": "user", "content": "I knock."},
        ]
    )

    req = provider.requests[0]
    assert req.system_prompt == "You are the game master."
    assert req.prompt == "Conversation history:\nYou stand at the gate.\n\nCurrent user input: I knock."


def test_fold_messages_without_history() -> None:
    assert fold_messages([{"role": "User", "content": "hi"}]) == ("", "hi")


def test_resolve_model_order() -> None:
    class SettingsWithDefault(DummySettings):
        llm_default_model = "configured-model"

    provider = FakeProvider(["x"], name="anthropic", models=[])

    assert make_service(provider).resolve_model("  explicit ") == "explicit"
    assert make_service(provider, SettingsWithDefault()).resolve_model() == "configured-model"
    assert make_service(provider).resolve_model() == "claude-haiku-4.5"
    assert make_service(FakeProvider(["x"], name="unknown", models=[])).resolve_model() == FALLBACK_MODEL
    assert make_service(FakeProvider(["x"])).resolve_model() == "fake-model"

    svc = make_service(FakeProvider(["x"]))
    svc.set_default_model("picked-at-runtime")
    assert svc.default_model == "picked-at-runtime"


def test_cache_key_depends_on_provider() -> None:
    a = make_service(FakeProvider(["x"], name="providerA"))
    b = make_service(FakeProvider(["x"], name="providerB"))
    assert a.cache_key("p", "s", "m") != b.cache_key("p", "s", "m")


@pytest.mark.asyncio
async def test_update_provider_clears_cache() -> None:
    svc = make_service(FakeProvider(["old"]))
    await svc.complete_text("hello")
    assert len(svc.cache) == 1

    new_provider = FakeProvider(["new"], name="other")
    svc.update_provider(new_provider)
    assert len(svc.cache) == 0
    assert (await svc.complete_text("hello")).text == "new"


def test_scene_helpers_use_lock_registry() -> None:
    svc = make_service(FakeProvider(["x"]))
    state = {"turns": 0}

    def advance() -> int:
        state["turns"] += 1
        return state["turns"]

    assert svc.with_scene("scene-7", advance) == 1
    assert svc.read_scene("scene-7", lambda: state["turns"]) == 1
    assert "scene-7" in svc.locks
    svc.close()


def test_scene_helpers_reject_coroutine_functions() -> None:
    svc = make_service(FakeProvider(["x"]))

    async def advance() -> None:
        return None

    with pytest.raises(TypeError):
        svc.with_scene("scene-8", advance)
    with pytest.raises(TypeError):
        svc.read_scene("scene-8", advance)
    assert svc.locks.refs("scene-8") is None
    svc.close()
