"""The ``bash`` tool: run one shell command with a bounded timeout and output."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import structlog

from familiar.tools.builtin.filesystem import resolve_path

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECS = 30
MAX_TIMEOUT_SECS = 120
MAX_OUTPUT_BYTES = 32_768


def truncate_output(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return text
    head = encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return f"{head}...[truncated, {len(encoded)} bytes total]"


async def run_bash(
    work_dir: str | Path,
    command: str,
    timeout_secs: Optional[int] = None,
    cwd: Optional[str] = None,
) -> str:
    timeout = min(max(1, timeout_secs or DEFAULT_TIMEOUT_SECS), MAX_TIMEOUT_SECS)
    run_dir = resolve_path(work_dir, cwd) if cwd else Path(work_dir)

    logger.info("shell.running", command=command[:200], cwd=str(run_dir), timeout=timeout)
    proc = await asyncio.create_subprocess_exec(
        "bash",
        "-c",
        command,
        cwd=str(run_dir),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        logger.warning("shell.timeout", command=command[:200], timeout=timeout)
        return f"Command timed out after {timeout}s"
    except asyncio.CancelledError:
        _kill(proc)
        raise

    text = f"Exit: {proc.returncode}\n"
    out = truncate_output(stdout)
    err = truncate_output(stderr)
    if out:
        text += f"--- stdout ---\n{out}\n"
    if err:
        text += f"--- stderr ---\n{err}"
    return text


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
