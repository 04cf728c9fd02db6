from __future__ import annotations
import secrets, time
from pathlib import PurePosixPath
from typing import Optional

from .models import Language

_SUFFIXES = {
    ".py": Language.PYTHON,
    ".js": Language.JAVASCRIPT,
    ".java": Language.JAVA,
    ".cpp": Language.CPP,
    ".cc": Language.CPP,
    ".cxx": Language.CPP,
    ".c": Language.C,
}


def new_sandbox_id() -> str:
    return f"{int(time.time())}-{secrets.token_hex(4)}"


def infer_language_from_entry(entry: str) -> Optional[Language]:
    return _SUFFIXES.get(PurePosixPath(entry.lower()).suffix)


def normalize_relpath(path: str) -> Optional[str]:
    """
    Return ``path`` as a clean relative POSIX path, or None if it is empty,
    absolute, or climbs out of its root.
    """
    if not path or "\x00" in path or "\\" in path:
        return None
    p = PurePosixPath(path)
    if p.is_absolute() or any(part in ("..", "") for part in p.parts):
        return None
    parts = [part for part in p.parts if part != "."]
    if not parts:
        return None
    return "/".join(parts)


def elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
