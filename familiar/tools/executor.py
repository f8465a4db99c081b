"""
Tool Executor — the boundary between deciding to act and acting.

The executor enforces:
1. INPUT VALIDATION: arguments are checked against the tool's JSON Schema
2. TIMEOUT PROTECTION: no tool can run forever
3. ERROR CAPTURE: failures come back as results, never as exceptions, so the
   loop can feed them to the model as observations
4. OBSERVABILITY: every execution is logged

Permission gating happens in the orchestrator BEFORE the executor runs.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
import traceback
from typing import Any, Callable, Optional

import structlog

from familiar.tools.registry import ToolRegistry
from familiar.types import ImageObservation

logger = structlog.get_logger(__name__)


class ToolExecutionResult:
    """
    The result of executing a tool — success or failure.

    Converted by the orchestrator into the tool_result block that goes back
    to the model.
    """
    def __init__(
        self,
        tool_use_id: str,
        tool_name: str,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
        execution_time: float = 0.0,
    ):
        self.tool_use_id = tool_use_id
        self.tool_name = tool_name
        self.success = success
        self.result = result
        self.error = error
        self.execution_time = execution_time

    def __repr__(self) -> str:
        state = "ok" if self.success else f"error={self.error!r}"
        return f"ToolExecutionResult({self.tool_name}, {state})"


# JSON Schema type → Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def validate_tool_input(
    schema: dict[str, Any],
    tool_input: dict[str, Any],
) -> Optional[str]:
    """
    Lightweight JSON Schema validation for tool inputs.

    Checks required fields, basic types and enums. Returns an error message
    string on failure, or None if the input is valid.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not prop_schema or not isinstance(prop_schema, dict):
            continue
        expected_type = prop_schema.get("type")
        py_types = _JSON_TYPE_MAP.get(expected_type) if expected_type else None
        if py_types is not None:
            # bool is an int subclass in Python; JSON keeps them distinct
            if isinstance(value, bool) and expected_type in ("integer", "number"):
                return f"Parameter '{name}' expected {expected_type}, got boolean"
            if not isinstance(value, py_types):
                return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"
        allowed = prop_schema.get("enum")
        if allowed and value not in allowed:
            return f"Parameter '{name}' must be one of {allowed}, got {value!r}"

    return None


class ToolExecutor:
    """Runs tool handlers with validation, timeouts and error capture."""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = 30.0,
        max_output_length: int = 32000,
    ):
        self._registry = registry
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length

        self._total_executions = 0
        self._total_successes = 0
        self._total_failures = 0

        logger.info(
            "tool_executor.initialized",
            timeout=default_timeout,
            max_output=max_output_length,
        )

    async def execute(
        self,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> ToolExecutionResult:
        """
        Execute one tool call.

        Args:
            tool_use_id: The call id from the model (for correlation)
            tool_name: Which tool to execute
            tool_input: The arguments the model provided

        Returns:
            ToolExecutionResult with success/failure and output
        """
        start_time = time.monotonic()
        self._total_executions += 1

        logger.info(
            "tool_executor.executing",
            tool_name=tool_name,
            tool_use_id=tool_use_id,
            input_keys=list(tool_input.keys()),
        )

        tool_def = self._registry.get(tool_name)
        if tool_def is None:
            return self._failure(tool_use_id, tool_name, f"Unknown tool: {tool_name}")
        if not tool_def.enabled:
            return self._failure(tool_use_id, tool_name, f"Tool '{tool_name}' is currently disabled.")
        handler = tool_def.handler
        if handler is None:
            return self._failure(tool_use_id, tool_name, f"No handler registered for tool: {tool_name}")

        validation_error = validate_tool_input(tool_def.input_schema, tool_input)
        if validation_error:
            return self._failure(tool_use_id, tool_name, validation_error)

        timeout = tool_def.timeout if tool_def.timeout is not None else self._default_timeout
        try:
            if inspect.iscoroutinefunction(handler):
                result = await asyncio.wait_for(handler(**tool_input), timeout=timeout)
            else:
                result = await self._execute_sync_handler(handler, tool_input, timeout)
        except asyncio.TimeoutError:
            logger.warning("tool_executor.timeout", tool_name=tool_name, timeout=timeout)
            return self._failure(
                tool_use_id,
                tool_name,
                f"Tool execution timed out after {timeout}s",
                time.monotonic() - start_time,
            )
        except Exception as e:
            error_detail = f"{type(e).__name__}: {e}"
            logger.error(
                "tool_executor.error",
                tool_name=tool_name,
                error=error_detail,
                traceback=traceback.format_exc(),
            )
            return self._failure(
                tool_use_id, tool_name, error_detail, time.monotonic() - start_time
            )

        result = self._truncate(result)
        elapsed = time.monotonic() - start_time
        self._total_successes += 1
        logger.info(
            "tool_executor.success",
            tool_name=tool_name,
            elapsed=round(elapsed, 2),
            result_length=len(str(result)),
        )
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            success=True,
            result=result,
            execution_time=elapsed,
        )

    def _truncate(self, result: Any) -> Any:
        if isinstance(result, ImageObservation):
            return result
        result_str = result if isinstance(result, str) else str(result)
        limit = self._max_output_length
        if len(result_str) <= limit:
            return result
        return (
            result_str[: limit - 100]
            + f"\n\n[Output truncated — {len(result_str)} chars total, "
            f"showing first {limit - 100}]"
        )

    def _failure(
        self,
        tool_use_id: str,
        tool_name: str,
        error: str,
        elapsed: float = 0.0,
    ) -> ToolExecutionResult:
        self._total_failures += 1
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            success=False,
            error=error,
            execution_time=elapsed,
        )

    async def _execute_sync_handler(
        self,
        handler: Callable[..., Any],
        tool_input: dict[str, Any],
        timeout: float,
    ) -> Any:
        """
        Run a synchronous handler on a dedicated daemon thread.

        A thread that overruns its timeout is abandoned rather than joined;
        the caller gets a TimeoutError immediately.
        """
        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        box: dict[str, Any] = {}

        def _invoke() -> None:
            try:
                box["result"] = handler(**tool_input)
            except Exception as exc:  # pragma: no cover - surfaced to caller
                box["error"] = exc
            finally:
                try:
                    loop.call_soon_threadsafe(done.set)
                except RuntimeError:  # pragma: no cover - loop closed during shutdown
                    pass

        threading.Thread(target=_invoke, daemon=True, name="familiar-tool").start()
        await asyncio.wait_for(done.wait(), timeout=timeout)

        if "error" in box:
            raise box["error"]
        return box.get("result")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": self._total_executions,
            "successes": self._total_successes,
            "failures": self._total_failures,
            "success_rate": (
                self._total_successes / max(1, self._total_executions)
            ),
        }
