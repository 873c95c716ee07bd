# tests/test_logging_and_settings.py
from __future__ import annotations

import json
import logging

from sceneforge.core import settings as settings_module
from sceneforge.core.logging import JsonFormatter, PlainFormatter, configure_logging
from sceneforge.orchestration.completion import CompletionService


def _record(msg) -> logging.LogRecord:
    return logging.LogRecord("sceneforge.cache", logging.INFO, __file__, 1, msg, None, None)


def test_json_formatter_merges_dict_messages() -> None:
    out = json.loads(JsonFormatter().format(_record({"event": "cache.hit", "cache_key_prefix": "abcd1234"})))
    assert out["event"] == "cache.hit"
    assert out["cache_key_prefix"] == "abcd1234"
    assert out["logger"] == "sceneforge.cache"
    assert out["level"] == "INFO"


def test_json_formatter_plain_message() -> None:
    out = json.loads(JsonFormatter().format(_record("hello")))
    assert out["message"] == "hello"


def test_plain_formatter_flattens_dict() -> None:
    line = PlainFormatter().format(_record({"event": "locks.sweep", "removed": 2, "note": "two words"}))
    assert "sceneforge.cache:" in line
    assert "event=locks.sweep removed=2" in line
    assert 'note="two words"' in line


def test_configure_logging_installs_single_handler() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("debug", fmt="plain")
        configure_logging("info", fmt="json")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


def test_settings_defaults_and_env(monkeypatch) -> None:
    for name in ("CACHE_TTL_SEC", "LOCK_MAX_ENTRIES", "LLM_PROVIDER", "LLM_DEFAULT_MODEL"):
        monkeypatch.delenv(name, raising=False)
    s = settings_module.AppSettings()
    assert s.cache_ttl_sec == 1800
    assert s.cache_max_entries == 1000
    assert s.cache_evict_batch == 100
    assert s.lock_max_entries == 200
    assert s.lock_idle_timeout_sec == 1800
    assert s.lock_sweep_interval_sec == 300

    monkeypatch.setenv("CACHE_TTL_SEC", "60")
    monkeypatch.setenv("LOCK_MAX_ENTRIES", "5")
    monkeypatch.setenv("LLM_PROVIDER", " OpenRouter ")
    settings_module.get_settings.cache_clear()
    try:
        s = settings_module.get_settings()
        assert s.cache_ttl_sec == 60
        assert s.lock_max_entries == 5
        assert s.provider_key == "openrouter"

        svc = CompletionService.from_settings(provider=None, settings=s)
        try:
            assert svc.cache.ttl == 60
            assert svc.locks.max_entries == 5
            assert svc.resolve_model() == "x-ai/grok-4.1-fast:free"
        finally:
            svc.close()
    finally:
        settings_module.get_settings.cache_clear()
