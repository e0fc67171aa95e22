"""Small text and serialisation helpers shared across the package."""
from __future__ import annotations

from typing import Any

import orjson
from pydantic import BaseModel


def truncate_text(text: str | None, max_chars: int = 300) -> str:
    """Truncate text for log lines and trace payloads."""
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def one_line(text: str | None, max_chars: int = 600) -> str:
    """Flatten newlines so a chunk preview fits on a single log line."""
    if text is None:
        return "NULL"
    return truncate_text(text.replace("\r", "").replace("\n", "\\n"), max_chars)


def to_json(payload: Any) -> str:
    """Serialise a pydantic model or plain structure with orjson (datetimes included)."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return orjson.dumps(payload, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")
