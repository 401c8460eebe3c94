"""Text and file helpers shared by ingestion, the indexes and the CLI."""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import orjson

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BLANK_LINES = re.compile(r"\n{3,}")
_INLINE_SPACE = re.compile(r"[ \t]{2,}")


# --- Text ---------------------------------------------------------------------

def clean_text(text: str) -> str:
    """Normalise ticket message text: CRLF -> LF, no control chars, tidy whitespace."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _BLANK_LINES.sub("\n\n", text)
    text = _INLINE_SPACE.sub(" ", text)
    return text.strip()


def truncate_text(text: str, max_chars: int = 300) -> str:
    """Shorten for display, cutting at a word boundary when one is close."""
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    space = cut.rfind(" ")
    if space > max_chars * 0.6:
        cut = cut[:space]
    return cut.rstrip() + "..."


# --- Files --------------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    """
    Write JSON with orjson (numpy arrays and non-str keys allowed).

    The file is written next to its target and renamed into place, so a
    crash mid-save leaves the previous index file intact.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = orjson.dumps(
        data,
        option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS | orjson.OPT_SERIALIZE_NUMPY,
    )
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "wb") as f:
        f.write(payload)
    os.replace(tmp_path, path)


def load_json(path: str | Path) -> Any:
    with open(Path(path), "rb") as f:
        return orjson.loads(f.read())


def ensure_dirs(*paths: str | Path) -> None:
    for p in paths:
        Path(p).mkdir(parents=True, exist_ok=True)
