"""CLI application — Click-based command hierarchy for familiar.

The main group and its global flags. ``chat`` (the interactive REPL) runs
when no subcommand is given; subcommand modules register themselves at the
bottom of this file.
"""

from __future__ import annotations

import click


@click.group(invoke_without_command=True)
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log verbosity (logs go to stderr)",
)
@click.option(
    "--work-dir",
    type=click.Path(file_okay=False, exists=True),
    default=None,
    help="Directory the file and shell tools work in (default: cwd)",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, work_dir: str | None) -> None:
    """familiar - an embodied AI companion in your terminal."""
    from familiar.main import configure_logging

    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["work_dir"] = work_dir

    if ctx.invoked_subcommand is None:
        ctx.invoke(chat_cmd)


@cli.command("chat")
@click.pass_context
def chat_cmd(ctx: click.Context) -> None:
    """Talk to the familiar (the default command)."""
    from familiar.main import run_repl

    work_dir = (ctx.obj or {}).get("work_dir")

    def _factory():
        from familiar.agent import FamiliarAgent

        return FamiliarAgent(work_dir=work_dir)

    run_repl(_factory)


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommand groups."""
    from familiar.cli.config_cmd import config_group, persona_group

    cli.add_command(config_group)
    cli.add_command(persona_group)


_register_subcommands()
