# check_provider.py
# Smoke check against the configured provider (LLM_BASE_URL / LLM_API_KEY / LLM_DEFAULT_MODEL).
import asyncio
import json
import sys
from typing import List

from pydantic import BaseModel

from sceneforge.core.logging import configure_logging
from sceneforge.core.settings import get_settings
from sceneforge.orchestration.completion import CompletionService
from sceneforge.providers.openai_compat import get_openai_compat_provider


class SceneIdea(BaseModel):
    name: str
    description: str
    themes: List[str] = []


def pretty(obj): return json.dumps(obj, ensure_ascii=False, indent=2)


async def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    svc = CompletionService.from_settings(get_openai_compat_provider(), settings)
    try:
        print("provider:", svc.provider_name, "model:", svc.default_model)

        resp = await svc.complete_text("Say hello in one sentence.", system_prompt="Be brief.", max_tokens=64)
        print("\n== text ==")
        print("assistant:", resp.text.strip())
        print("usage:", resp.tokens_used)

        ideas = await svc.complete_structured(
            "Invent two short scene ideas for a lighthouse mystery.",
            "You are an interactive-fiction designer.",
            List[SceneIdea],
        )
        print("\n== structured ==")
        print(pretty([i.model_dump() for i in ideas]))

        # second call must come from the cache
        await svc.complete_text("Say hello in one sentence.", system_prompt="Be brief.", max_tokens=64)
        print("\n== cache ==")
        print(pretty(svc.cache.stats()))
        print(pretty(svc.locks.stats()))
    finally:
        svc.close()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
