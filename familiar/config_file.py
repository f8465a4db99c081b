"""TOML configuration file and persona document utilities.

Reading: uses tomllib (stdlib, Python >=3.11)
Writing: uses tomli-w (only write dependency needed)

The agent record lives at ``~/.config/familiar-ai/config.toml`` unless
FAMILIAR_CONFIG_PATH says otherwise. The persona document (ME.md) is looked
up in ``~/.familiar_ai/ME.md`` first and then in the working directory.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from familiar.config import AgentConfig
from familiar.errors import ConfigError

logger = structlog.get_logger(__name__)


def load_config(path: Path) -> dict:
    """Load and parse a TOML file."""
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def write_config(path: Path, data: dict) -> None:
    """Atomic write with tempfile + rename.

    Creates parent directories if needed.
    Uses tempfile in same directory for atomic rename.
    """
    import tomli_w

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, suffix=".tmp", prefix=".familiar_config_"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            tomli_w.dump(data, f)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def load_agent_config(path: Path) -> AgentConfig:
    """Read the agent record, falling back to defaults when the file is absent."""
    if not path.is_file():
        logger.info("config_file.missing_using_defaults", path=str(path))
        return AgentConfig()
    try:
        data = load_config(path)
    except (OSError, ValueError) as exc:
        # tomllib.TOMLDecodeError subclasses ValueError
        raise ConfigError(f"Could not read {path}: {exc}") from exc
    try:
        return AgentConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def save_agent_config(path: Path, config: AgentConfig) -> None:
    """Persist the agent record atomically."""
    write_config(path, config.to_toml_dict())
    logger.info("config_file.saved", path=str(path), platform=config.platform)


# -------------------------------------------------------------------------
# Persona document (ME.md)
# -------------------------------------------------------------------------


def find_me_md(primary: Path) -> Path | None:
    """Return the first existing persona document.

    Search order:
    1. The configured location (default ~/.familiar_ai/ME.md)
    2. ./ME.md in the current working directory
    """
    if primary.is_file():
        return primary
    cwd = Path.cwd() / "ME.md"
    if cwd.is_file():
        return cwd
    return None


def read_me_md(primary: Path) -> str:
    """Read the persona document; an absent document reads as empty."""
    path = find_me_md(primary)
    if path is None:
        return ""
    return path.read_text(encoding="utf-8")


def write_me_md(primary: Path, content: str) -> None:
    """Atomically replace the persona document at its configured location."""
    primary.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=primary.parent, suffix=".tmp", prefix=".me_md_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, primary)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    logger.info("config_file.me_md_saved", path=str(primary), length=len(content))


# -------------------------------------------------------------------------
# Dotted-key access (used by `familiar config get/set/unset`)
# -------------------------------------------------------------------------


def _validate_dotted_key(dotted_key: str) -> list[str]:
    """Validate and split a dotted key. Raises ValueError on empty segments."""
    if not dotted_key or not dotted_key.strip():
        raise ValueError("Key must not be empty")
    keys = dotted_key.split(".")
    if any(not k for k in keys):
        raise ValueError(f"Key contains empty segments: {dotted_key!r}")
    return keys


def get_value(data: dict, dotted_key: str) -> Any:
    """Get a nested value by dotted key (e.g., 'camera.host')."""
    keys = _validate_dotted_key(dotted_key)
    current: Any = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            raise KeyError(dotted_key)
        current = current[key]
    return current


def set_value(data: dict, dotted_key: str, value: Any) -> dict:
    """Set a nested value by dotted key. Returns modified dict."""
    keys = _validate_dotted_key(dotted_key)
    current = data
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value
    return data


def delete_value(data: dict, dotted_key: str) -> dict:
    """Delete a nested value by dotted key. Returns modified dict.

    Raises KeyError if the key does not exist.
    """
    keys = _validate_dotted_key(dotted_key)
    current = data
    for key in keys[:-1]:
        if not isinstance(current, dict) or key not in current:
            raise KeyError(dotted_key)
        current = current[key]
    if not isinstance(current, dict) or keys[-1] not in current:
        raise KeyError(dotted_key)
    del current[keys[-1]]
    return data
