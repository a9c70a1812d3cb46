from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys copied from `logger.*(..., extra={...})` into each line.
_CONTEXT_KEYS = ("instance", "kind", "child", "source", "op", "slot", "pid")


def _utc_ts_iso(ts: float) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except (OverflowError, OSError, ValueError):
        return ""


class JsonlFormatter(logging.Formatter):
    """One JSON object per line; small and stable fields."""

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "wired"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _utc_ts_iso(getattr(record, "created", 0.0) or 0.0),
            "level": str(getattr(record, "levelname", "") or ""),
            "logger": str(getattr(record, "name", "") or ""),
            "component": self._component,
            "msg": record.getMessage(),
        }

        for k in _CONTEXT_KEYS:
            v = getattr(record, k, None)
            if v is None:
                continue
            sv = str(v).strip()
            if sv:
                payload[k] = sv

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            return '{"component":"%s","level":"%s","msg":"(log serialization failed)"}' % (
                self._component,
                payload.get("level", "INFO"),
            )


def _parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    value = getattr(logging, s, default)
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    log_path: Optional[Path] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    Lines go to stderr (stdout belongs to the MCP protocol in the gateway) and,
    when `log_path` is given, are appended to that file as well.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    lvl = _parse_level(level)
    root = logging.getLogger()
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    formatter = JsonlFormatter(component=component)
    if not any(isinstance(getattr(h, "formatter", None), JsonlFormatter) for h in root.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setLevel(lvl)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if log_path is not None:
        attach_log_file(log_path, component=component, level=level)


def attach_log_file(log_path: Path, *, component: str, level: str = "INFO") -> None:
    """Add a JSONL file handler to the root logger (once per path)."""
    key = f"file:{log_path}"
    if _CONFIGURED.get(key):
        return
    _CONFIGURED[key] = True
    log_path.parent.mkdir(parents=True, exist_ok=True)
    lvl = _parse_level(level)
    handler = logging.FileHandler(str(log_path), encoding="utf-8")
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    logging.getLogger().addHandler(handler)
