"""Tool system — the familiar's hands in the world."""
from familiar.tools.executor import ToolExecutionResult, ToolExecutor
from familiar.tools.registry import RiskTier, ToolDefinition, ToolRegistry

__all__ = ["ToolRegistry", "ToolDefinition", "RiskTier", "ToolExecutor", "ToolExecutionResult"]
