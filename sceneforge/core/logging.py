# sceneforge/core/logging.py
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base: Dict[str, Any] = {
            "level": record.levelname,
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
        }
        msg = record.msg
        if isinstance(msg, dict):
            payload = {**base, **msg}
        else:
            payload = {**base, "message": record.getMessage()}
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    # Human readable formatter; supports dict messages
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        lvl = record.levelname.ljust(5)
        base = f"{ts} | {lvl} | {record.name}:"
        msg = record.msg
        if isinstance(msg, dict):
            parts = []
            for k, v in msg.items():
                if isinstance(v, (dict, list)):
                    v_str = json.dumps(v, ensure_ascii=False, default=str)
                else:
                    v_str = str(v)
                if " " in v_str or ";" in v_str:
                    v_str = f'"{v_str}"'
                parts.append(f"{k}={v_str}")
            text = " ".join(parts)
        else:
            text = record.getMessage()
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return f"{base} {text}".rstrip()


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Install a single stream handler on the root logger.

    ``fmt`` is ``"json"`` (default) or ``"plain"``; when omitted it is taken
    from settings (``LOG_FORMAT``).
    """
    if fmt is None:
        from sceneforge.core.settings import get_settings

        fmt = get_settings().log_format

    root = logging.getLogger()
    root.setLevel(level.upper())

    handler = logging.StreamHandler()
    if fmt.lower() in ("plain", "text", "human"):
        handler.setFormatter(PlainFormatter())
    else:
        handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
