"""Configuration commands — show, get, set, unset, path; persona show/set."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from familiar.config import AgentConfig, PathsConfig
from familiar.config_file import (
    delete_value,
    get_value,
    load_config,
    read_me_md,
    set_value,
    write_config,
    write_me_md,
)

_MASKED_KEYS = {"api_key", "api_secret", "password", "elevenlabs_api_key"}


def _paths() -> PathsConfig:
    return PathsConfig()


def _load(path: Path) -> dict:
    if not path.is_file():
        return {}
    try:
        return load_config(path)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Could not read {path}: {e}")


def _validate(data: dict) -> None:
    try:
        AgentConfig.model_validate(data)
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")


@click.group("config", invoke_without_command=True)
@click.pass_context
def config_group(ctx: click.Context) -> None:
    """Manage the agent record (config.toml)."""
    if ctx.invoked_subcommand is None:
        _show_config()


@config_group.command("show")
@click.option("--reveal", is_flag=True, help="Print credentials unmasked")
def config_show(reveal: bool) -> None:
    """Show every setting, defaults included."""
    _show_config(reveal=reveal)


@config_group.command("path")
def config_path() -> None:
    """Print where config.toml lives."""
    click.echo(str(_paths().config_path))


@config_group.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Get a configuration value by dotted key."""
    data = _load(_paths().config_path)
    try:
        value = get_value(data, key)
    except KeyError:
        raise click.ClickException(f"Key not found: {key}")
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(repr(value))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set a configuration value by dotted key."""
    path = _paths().config_path
    data = _load(path)
    parsed = _parse_rules(value) if key == "permissions.rules" else _parse_value(value)
    try:
        set_value(data, key, parsed)
    except ValueError as e:
        raise click.ClickException(str(e))
    _validate(data)
    write_config(path, data)
    shown = "***" if key.rsplit(".", 1)[-1] in _MASKED_KEYS else repr(parsed)
    click.echo(f"Set {key} = {shown} in {path}")


@config_group.command("unset")
@click.argument("key")
def config_unset(key: str) -> None:
    """Remove a setting so its default applies again."""
    path = _paths().config_path
    if not path.is_file():
        raise click.ClickException(f"No config file at {path}")
    data = _load(path)
    try:
        delete_value(data, key)
    except KeyError:
        raise click.ClickException(f"Key not found: {key}")
    except ValueError as e:
        raise click.ClickException(str(e))
    write_config(path, data)
    click.echo(f"Removed {key} from {path}")


def _show_config(reveal: bool = False) -> None:
    path = _paths().config_path
    data = _load(path)
    try:
        effective = AgentConfig.model_validate(data).to_toml_dict()
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    click.echo(f"TOML file: {path}{'' if path.is_file() else ' (not created yet)'}")
    for key, value in _flatten(effective):
        click.echo(f"  {key} = {_display(key, value, reveal)}")


def _flatten(data: dict, prefix: str = "") -> list[tuple[str, Any]]:
    items: list[tuple[str, Any]] = []
    for key, value in sorted(data.items()):
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            items.extend(_flatten(value, dotted + "."))
        else:
            items.append((dotted, value))
    return items


def _display(dotted_key: str, value: Any, reveal: bool) -> str:
    if not reveal and value and dotted_key.rsplit(".", 1)[-1] in _MASKED_KEYS:
        return "'***'"
    return repr(value)


def _parse_rules(raw: str) -> list[str]:
    """Comma-separated rules: ``deny:walk,allow:bash:git *``."""
    return [part.strip() for part in raw.split(",") if part.strip()]


def _parse_value(raw: str):
    """Parse a string value into the appropriate Python type."""
    if raw.lower() == "true":
        return True
    if raw.lower() == "false":
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        val = float(raw)
        if not math.isfinite(val):
            raise click.ClickException(f"Invalid float value: {raw}")
        return val
    except ValueError:
        pass
    return raw


# ---------------------------------------------------------------------------
# Persona document
# ---------------------------------------------------------------------------


@click.group("persona", invoke_without_command=True)
@click.pass_context
def persona_group(ctx: click.Context) -> None:
    """Read or replace the persona document (ME.md)."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(persona_show)


@persona_group.command("show")
def persona_show() -> None:
    """Print the persona document."""
    content = read_me_md(_paths().me_md_path)
    if not content.strip():
        click.echo("(no ME.md yet; the configured persona is used)")
        return
    click.echo(content.rstrip("\n"))


@persona_group.command("set")
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
def persona_set(source) -> None:
    """Replace ME.md with the contents of SOURCE (default: stdin)."""
    content = source.read()
    path = _paths().me_md_path
    write_me_md(path, content)
    click.echo(f"Wrote {len(content)} characters to {path}")
