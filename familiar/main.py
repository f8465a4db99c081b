"""
Main — the familiar's terminal host.

This module does two jobs:
  1. ``configure_logging`` sets up structlog over the standard library, with
     a processor that keeps secrets and conversation text out of log lines.
  2. ``FamiliarSession`` is the interactive REPL: it builds a FamiliarAgent,
     starts its heartbeat, reads lines from the terminal and renders each
     turn's event stream as it arrives.

Rendering rules:
  - text events are printed inline as they stream
  - action labels are printed dimmed on their own line
  - a permission request of a user turn is asked right away ("Allow say?");
    one raised by an autonomous turn is announced and answered later with
    /allow ID or /deny ID
  - Ctrl+C cancels the active turn; with no turn running, two quick presses quit
"""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import sys
import threading
import time
from typing import Any, Callable, Optional

import structlog
from rich.console import Console
from rich.markup import escape as markup_escape
from rich.panel import Panel

from familiar.errors import ConcurrencyError, FamiliarError
from familiar.events import (
    ActionEvent,
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    EventStream,
    PermRequestEvent,
    TextEvent,
)

# Ensure input() uses readline-backed line editing/history when available.
try:  # pragma: no cover - platform-dependent optional module
    import readline  # noqa: F401
except Exception:  # pragma: no cover
    readline = None

_SECRET_KEYS = {"api_key", "api_secret", "password", "secret", "elevenlabs_api_key"}
_TRUNCATED_KEYS = {"content", "text", "query", "chunk"}
_MAX_DISPLAY_LEN = 80


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that masks credentials and shortens conversation text.

    Secrets are replaced outright; user and model text is cut to a short
    preview so full messages never reach the log.
    """
    for key in _SECRET_KEYS:
        if event_dict.get(key):
            event_dict[key] = "***"
    for key in _TRUNCATED_KEYS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(level: str = "WARNING") -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; only the first call has any effect.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, str(level).upper(), logging.WARNING),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)
console = Console()

# ANSI control-sequence matcher used to sanitize raw escape text that slips
# through on terminals without full line-edit support.
_ANSI_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|[@-_])")

_SLASH_COMMANDS = ("/help", "/clear", "/allow", "/deny", "/status", "/quit")


class FamiliarSession:
    """
    One interactive terminal session.

    Owns the agent for its lifetime: starts it, runs the read/render loop,
    and stops it on the way out whatever happened in between.
    """

    def __init__(self, agent_factory: Optional[Callable[[], Any]] = None):
        self._agent_factory = agent_factory
        self._agent = None
        self._shutdown_event = asyncio.Event()
        self._interrupted = asyncio.Event()
        self._pending_read: Optional[asyncio.Task] = None
        self._eof = False
        self._last_sigint_at = 0.0
        self._sigint_confirm_window_seconds = 1.5
        self._render_lock = asyncio.Lock()

    async def run(self) -> None:
        try:
            self._agent = self._build_agent()
        except FamiliarError as e:
            console.print(f"[red]Startup error: {markup_escape(str(e))}[/red]")
            return

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            loop.add_signal_handler(signal.SIGTERM, self._request_shutdown)
        except NotImplementedError:
            pass  # Signal handlers are not available on this platform (Windows)

        await self._agent.start()
        autonomous = asyncio.create_task(
            self._consume_autonomous(), name="familiar-autonomous-consumer"
        )
        try:
            config = self._agent.get_config()
            if not config.is_configured:
                console.print(
                    "[yellow]No API key configured.[/yellow] "
                    "[dim]Run `familiar config set api_key <KEY>` first.[/dim]"
                )
            console.print(
                f"[green]{markup_escape(config.agent_name)} is awake. "
                "Type a message, or /help.[/green]"
            )
            console.print("[dim]Ctrl+C interrupts; press it twice quickly to quit.[/dim]")
            console.print()
            await self._interaction_loop()
        finally:
            autonomous.cancel()
            await asyncio.gather(autonomous, return_exceptions=True)
            await self._agent.stop()

    def _build_agent(self):
        if self._agent_factory is not None:
            return self._agent_factory()
        from familiar.agent import FamiliarAgent

        return FamiliarAgent()

    # ------------------------------------------------------------------
    # Interaction loop
    # ------------------------------------------------------------------

    async def _interaction_loop(self) -> None:
        while not self._shutdown_event.is_set():
            line = await self._read_line(self._make_input_prompt("You", ": ", ansi_color="1;32"))
            if line is None:
                if self._eof or self._shutdown_event.is_set():
                    break
                continue

            self._last_sigint_at = 0.0
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith("/"):
                if self._handle_command(stripped) == "exit":
                    break
                continue

            try:
                stream = self._agent.send_message(stripped)
            except ConcurrencyError:
                console.print(
                    "[yellow]Still busy with the current turn.[/yellow] "
                    "[dim]Wait for it, or press Ctrl+C to interrupt it.[/dim]"
                )
                continue
            self._interrupted.clear()
            await self._render(stream, interactive=True)

    def _handle_command(self, line: str) -> Optional[str]:
        cmd, _, arg = line.partition(" ")
        cmd = cmd.lower()
        arg = arg.strip()

        if cmd in ("/quit", "/exit"):
            console.print("[dim]Bye for now.[/dim]")
            return "exit"
        if cmd == "/help":
            console.print(
                Panel(
                    "/clear       forget the conversation\n"
                    "/allow ID    approve a pending tool call\n"
                    "/deny ID     deny a pending tool call\n"
                    "/status      show the agent's state\n"
                    "/quit        leave",
                    title="Commands",
                    border_style="cyan",
                )
            )
            return None
        if cmd == "/clear":
            try:
                self._agent.clear_history()
            except ConcurrencyError:
                console.print("[yellow]Cannot clear while a turn is running.[/yellow]")
                return None
            console.print("[green]Conversation cleared.[/green]")
            return None
        if cmd in ("/allow", "/deny"):
            if not arg:
                console.print(f"[yellow]Usage:[/yellow] {cmd} ID")
                return None
            if self._agent.respond_permission(arg, cmd == "/allow"):
                verb = "Allowed" if cmd == "/allow" else "Denied"
                console.print(f"[green]{verb} {markup_escape(arg)}.[/green]")
            else:
                console.print(f"[yellow]No pending request {markup_escape(arg)}.[/yellow]")
            return None
        if cmd == "/status":
            self._render_status_panel(self._agent.status())
            return None

        console.print(f"[yellow]Unknown command:[/yellow] {markup_escape(cmd)}")
        console.print(f"[dim]Available: {', '.join(_SLASH_COMMANDS)}[/dim]")
        return None

    def _render_status_panel(self, status: dict[str, Any]) -> None:
        desires = ", ".join(f"{name} {level:.2f}" for name, level in status["desires"].items())
        lines = [
            f"Phase: {status['phase']}",
            f"Last turn: {status['last_outcome'] or 'none yet'}",
            f"Model: {status['platform']} / {status['model']}",
            f"Trust mode: {status['trust_mode']}",
            f"Pending permissions: {status['pending_permissions']}",
            f"Messages: {status['messages']}",
            f"Desires: {desires}",
            f"Heartbeat: {'running' if status['heartbeat']['running'] else 'stopped'}"
            f" ({status['heartbeat']['beats']} beats, {status['heartbeat']['triggered']} triggered)",
        ]
        console.print(
            Panel(markup_escape("\n".join(lines)), title="Familiar Status", border_style="cyan")
        )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    async def _render(self, stream: EventStream, *, interactive: bool) -> None:
        """Print one turn's events until its terminal event."""
        async with self._render_lock:
            mid_line = False
            async for event in stream:
                if isinstance(event, TextEvent):
                    console.print(event.chunk, end="", markup=False, highlight=False)
                    mid_line = not event.chunk.endswith("\n")
                    continue
                if mid_line:
                    console.print()
                    mid_line = False

                if isinstance(event, ActionEvent):
                    console.print(f"[dim]{markup_escape(event.label)}[/dim]")
                elif isinstance(event, PermRequestEvent):
                    await self._ask_permission(event, interactive)
                elif isinstance(event, DoneEvent):
                    console.print()
                elif isinstance(event, CancelledEvent):
                    console.print("[dim](interrupted)[/dim]\n")
                elif isinstance(event, ErrorEvent):
                    console.print(f"[red]Error: {markup_escape(event.message)}[/red]\n")

    async def _ask_permission(self, event: PermRequestEvent, interactive: bool) -> None:
        detail = f" ({event.detail})" if event.detail else ""
        if not interactive:
            console.print(
                f"[yellow]{markup_escape(event.tool)}{markup_escape(detail)} needs permission.[/yellow] "
                f"[dim]/allow {event.id} or /deny {event.id}[/dim]"
            )
            return
        answer = await self._read_line(f"Allow {event.tool}{detail}? [y/N]: ")
        if answer is None:
            # Interrupted; the turn's cancellation denies the request.
            return
        self._agent.respond_permission(event.id, answer.strip().lower() in ("y", "yes"))

    async def _consume_autonomous(self) -> None:
        """Render the turns the familiar starts on its own."""
        while True:
            stream = await self._agent.autonomous_streams.get()
            console.print("\n[dim magenta](acting on its own)[/dim magenta]")
            await self._render(stream, interactive=False)

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------

    async def _read_line(self, prompt: str) -> Optional[str]:
        """
        Read one line without blocking the event loop.

        Returns None on end of input, on shutdown and when a Ctrl+C
        interrupts the wait. An interrupted read keeps its thread; the next
        call picks up the same line instead of starting a second reader.
        """
        if self._shutdown_event.is_set():
            return None
        if self._pending_read is None:
            self._pending_read = asyncio.create_task(
                self._run_blocking_call(lambda: self._read_line_blocking(prompt)),
                name="familiar-read-input",
            )
        read_task = self._pending_read
        wake = asyncio.create_task(self._interrupted.wait(), name="familiar-read-wake")
        try:
            done, _ = await asyncio.wait({read_task, wake}, return_when=asyncio.FIRST_COMPLETED)
            if read_task not in done:
                self._interrupted.clear()
                return None
            self._pending_read = None
            line = read_task.result()
            if line is None:
                self._eof = True
                return None
            return self._sanitize_terminal_input(line)
        finally:
            wake.cancel()
            await asyncio.gather(wake, return_exceptions=True)

    @staticmethod
    def _read_line_blocking(prompt: str = "") -> Optional[str]:
        try:
            return input(prompt)
        except EOFError:
            return None

    @staticmethod
    def _make_input_prompt(text: str, suffix: str = "", *, ansi_color: str = "") -> str:
        """Build a terminal prompt string safe for ``input()``.

        With readline, ANSI escapes are wrapped in ``\\001``/``\\002`` markers
        so they do not count toward the visible prompt width.
        """
        if not ansi_color:
            return f"{text}{suffix}"
        start = f"\033[{ansi_color}m"
        reset = "\033[0m"
        if readline is not None:
            start = f"\001{start}\002"
            reset = f"\001{reset}\002"
        return f"{start}{text}{reset}{suffix}"

    @staticmethod
    def _sanitize_terminal_input(line: str) -> str:
        """Strip terminal control escape sequences from interactive input."""
        if not line:
            return line
        return _ANSI_ESCAPE_RE.sub("", line).replace("\r", "")

    async def _run_blocking_call(self, fn: Callable[[], Any]) -> Any:
        """Run a blocking callable in a daemon thread."""
        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        box: dict[str, Any] = {}

        def _invoke() -> None:
            try:
                box["result"] = fn()
            except BaseException as exc:
                box["error"] = exc
            finally:
                try:
                    loop.call_soon_threadsafe(done.set)
                except RuntimeError:
                    pass

        thread = threading.Thread(target=_invoke, daemon=True)
        thread.start()
        await done.wait()

        if "error" in box:
            raise box["error"]
        return box.get("result")

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _request_shutdown(self) -> None:
        self._shutdown_event.set()
        self._interrupted.set()

    def _handle_sigint(self) -> None:
        """
        Ctrl+C interrupts the active turn. With nothing running, a second
        press within the confirmation window quits.
        """
        if self._shutdown_event.is_set():
            return
        if self._agent is not None and self._agent.cancel_message():
            self._interrupted.set()
            logger.info("session.turn_interrupted")
            return

        now = time.monotonic()
        if now - self._last_sigint_at <= self._sigint_confirm_window_seconds:
            console.print("\n[dim]Bye for now.[/dim]")
            self._request_shutdown()
            self._last_sigint_at = 0.0
            return

        self._last_sigint_at = now
        console.print("\n[dim]Press Ctrl+C again quickly to quit.[/dim]")


def run_repl(agent_factory: Optional[Callable[[], Any]] = None) -> None:
    """Run an interactive session until the user leaves."""
    session = FamiliarSession(agent_factory)
    try:
        asyncio.run(session.run())
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted. Exiting.[/dim]")
