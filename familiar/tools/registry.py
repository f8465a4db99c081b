"""
Tool Registry — the agent's catalog of capabilities.

Every tool the agent can use is registered here with its JSON Schema
definition, description, handler and risk tier. The registry serves three
purposes:

1. DISCOVERY: building the tools array sent to the model on each pass.

2. DISPATCH: mapping a tool name from the model back to its handler.

3. CLASSIFICATION: telling the permission gate how risky a call is, and
   which argument identifies what the call acts on (``subject_key``), so
   trust rules like ``allow:bash:git *`` can match it.

Registration happens once at agent construction. A name the model invents
that is not in here is a hard error for the turn, never silently dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class RiskTier(str, Enum):
    """
    Formal risk tiers with associated default policies.

    Under the ``prompt`` trust mode only LOW is auto-approved; every other
    tier asks the human first. Outright denial comes from custom rules.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Default policies per risk tier (enforced by harness/permissions.py)
RISK_TIER_POLICIES: dict[RiskTier, dict[str, bool]] = {
    RiskTier.LOW: {"require_approval": False},
    RiskTier.MEDIUM: {"require_approval": True},
    RiskTier.HIGH: {"require_approval": True},
    RiskTier.CRITICAL: {"require_approval": True},
}


_VALID_RISK_LEVELS = frozenset(tier.value for tier in RiskTier)


@dataclass
class ToolDefinition:
    """
    A registered tool with its schema, description, and handler.

    The JSON schema is exactly what gets sent to the model in the tools
    array. ``interruptible`` says whether a cancelled turn may abandon the
    handler mid-flight; physical actions that must not be left half-done set
    it to False and are allowed to finish.
    """
    name: str
    description: str
    input_schema: dict[str, Any]          # JSON Schema for tool parameters
    handler: Optional[Callable] = None    # The function to call
    risk_level: str = "high"              # "low", "medium", "high", "critical"; unclassified asks
    category: str = "general"             # For organizing in UI/logs
    enabled: bool = True                  # Can be disabled without removal
    timeout: Optional[float] = None       # Per-tool timeout in seconds (None = use default)
    interruptible: bool = True
    subject_key: Optional[str] = None     # Argument matched by custom trust rules

    def __post_init__(self) -> None:
        if self.risk_level not in _VALID_RISK_LEVELS:
            logger.warning(
                "tool_definition.invalid_risk_level",
                name=self.name,
                risk_level=self.risk_level,
                coerced_to="critical",
            )
            self.risk_level = RiskTier.CRITICAL.value

    @property
    def risk_tier(self) -> RiskTier:
        return RiskTier(self.risk_level)

    def to_api_format(self) -> dict[str, Any]:
        """
        Convert to the neutral tool descriptor the backends consume:
        {
            "name": "tool_name",
            "description": "What this tool does and when to use it",
            "input_schema": { JSON Schema }
        }
        """
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Central registry for all tools available to the agent."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        logger.info("tool_registry.initialized")

    def register(self, tool: ToolDefinition, *, allow_override: bool = False) -> None:
        """Register a tool, blocking accidental name collisions by default."""
        existing = self._tools.get(tool.name)
        if existing is not None and not allow_override:
            logger.warning(
                "tool_registry.name_collision",
                name=tool.name,
                existing_category=existing.category,
                new_category=tool.category,
            )
            raise ValueError(
                f"Tool '{tool.name}' is already registered. "
                "Use allow_override=True for an explicit replacement."
            )

        self._tools[tool.name] = tool
        logger.debug(
            "tool_registry.registered",
            name=tool.name,
            risk_level=tool.risk_level,
            category=tool.category,
        )

    def get(self, name: str) -> Optional[ToolDefinition]:
        """Look up a tool by name."""
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def get_api_tools(self, max_risk: str = "critical") -> list[dict[str, Any]]:
        """Generate the tools array for a model call."""
        risk_order = {"low": 0, "medium": 1, "high": 2, "critical": 3}
        max_risk_level = risk_order.get(max_risk, 3)

        tools = []
        for tool in self._tools.values():
            if not tool.enabled:
                continue
            if risk_order.get(tool.risk_level, 3) > max_risk_level:
                continue
            tools.append(tool.to_api_format())
        return tools

    def list_tools(self) -> list[dict[str, Any]]:
        """List all registered tools with metadata."""
        return [
            {
                "name": tool.name,
                "category": tool.category,
                "risk_level": tool.risk_level,
                "enabled": tool.enabled,
                "interruptible": tool.interruptible,
            }
            for tool in self._tools.values()
        ]

    @property
    def count(self) -> int:
        return len(self._tools)
