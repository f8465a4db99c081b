"""
Error taxonomy for the familiar runtime.

Two families matter to the turn loop:

- Errors that END a turn: provider failures, a tool name the registry has
  never heard of, and running out of steps. These surface to the host as a
  single ``error`` event.
- Errors that are ABSORBED: recall failures, tool failures and permission
  denials. These become model-visible observations and the loop carries on.

``ConcurrencyError`` is different again: it is raised synchronously at the
API boundary, before any state changes, when a caller tries to start a second
turn while one is still running.
"""

from __future__ import annotations

from typing import Optional


class FamiliarError(Exception):
    """Base class for every error raised by the familiar package."""


class ConfigError(FamiliarError):
    """The persisted configuration could not be read or validated."""


class ConcurrencyError(FamiliarError):
    """A turn is already active (or an operation requires the agent to be idle)."""


class RecallError(FamiliarError):
    """The memory store could not answer a recall query."""


class ToolExecutionError(FamiliarError):
    """A tool handler failed. Fed back to the model as an observation."""


class PermissionDenied(FamiliarError):
    """A tool call was refused by the permission gate or by the user."""


class UnknownToolError(FamiliarError):
    """The model asked for a tool that is not in the registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool requested by model: {tool_name!r}")
        self.tool_name = tool_name


class StepLimitError(FamiliarError):
    """The turn kept requesting tools past the configured iteration limit."""

    def __init__(self, max_iterations: int):
        super().__init__(f"Reached maximum steps ({max_iterations}).")
        self.max_iterations = max_iterations


class ProviderError(FamiliarError):
    """
    Any failure talking to a language-model backend.

    Every backend maps its own exceptions onto this hierarchy so the
    orchestrator never has to know which SDK or wire format produced it.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
        provider: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.provider = provider


class ProviderConnectionError(ProviderError):
    """The backend could not be reached (DNS, TCP, TLS, timeout)."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class ProviderAuthError(ProviderError):
    """The backend rejected our credentials."""


class ProviderRateLimitError(ProviderError):
    """The backend asked us to slow down."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("retryable", True)
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class MalformedStreamError(ProviderError):
    """The backend produced a stream we could not parse."""
