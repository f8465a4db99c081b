"""File tools: read, write and list files relative to a working directory."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import structlog

from familiar.errors import ToolExecutionError

logger = structlog.get_logger(__name__)

MAX_LISTED_FILES = 200
MAX_READ_CHARS = 100_000


def resolve_path(work_dir: str | Path, raw: str) -> Path:
    """Absolute paths are kept; relative ones are taken from ``work_dir``."""
    path = Path(os.path.expanduser(raw))
    if not path.is_absolute():
        path = Path(work_dir) / path
    return path


def read_file(
    work_dir: str | Path,
    path: str,
    start_line: Optional[int] = None,
    end_line: Optional[int] = None,
) -> str:
    resolved = resolve_path(work_dir, path)
    if not resolved.exists():
        raise ToolExecutionError(f"File not found: {resolved}")
    if not resolved.is_file():
        raise ToolExecutionError(f"Not a regular file: {resolved}")

    lines = resolved.read_text(encoding="utf-8", errors="replace").splitlines()
    total = len(lines)
    start = max(0, (start_line or 1) - 1)
    end = total if end_line is None else max(start, min(end_line, total))
    numbered = "".join(
        f"{number:4}: {line}\n"
        for number, line in enumerate(lines[start:end], start=start + 1)
    )
    if len(numbered) > MAX_READ_CHARS:
        numbered = numbered[:MAX_READ_CHARS] + "\n... [truncated at 100 000 chars]"
    return f"File: {resolved} ({total} lines total)\n{numbered}"


def write_file(work_dir: str | Path, path: str, content: str) -> str:
    resolved = resolve_path(work_dir, path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    byte_count = len(content.encode("utf-8"))
    logger.info("filesystem.wrote", path=str(resolved), bytes=byte_count)
    return f"Wrote {byte_count} bytes to {resolved}"


def list_files(
    work_dir: str | Path,
    path: Optional[str] = None,
    pattern: str = "**/*",
) -> str:
    base = resolve_path(work_dir, path) if path else Path(work_dir)
    if not base.is_dir():
        raise ToolExecutionError(f"Not a directory: {base}")

    found: list[str] = []
    for candidate in sorted(base.glob(pattern or "**/*")):
        if candidate.is_file():
            found.append(str(candidate))
            if len(found) >= MAX_LISTED_FILES:
                break
    if not found:
        return "No files found"
    return "\n".join(found)
