"""
Permission Gate — who gets to say yes before the agent acts.

Every tool call the model requests passes through here before it can have a
side effect. The gate answers with one of three verdicts:

    APPROVED   run it now
    DENIED     do not run it; the model is told why
    PENDING    ask the human; the orchestrator emits a perm_request and
               suspends that call until respond() is called with the id

Trust modes:

    full    approve everything
    prompt  approve calls the registry classifies as safe (risk "low"),
            ask about everything else, unregistered names included
    custom  walk the user's ordered allow/deny rules; the first rule whose
            tool glob and argument glob both match decides. No match falls
            back to prompt behavior.

Pending requests are one-shot futures keyed by a short random id. A response
for an id that is unknown or already resolved is ignored and reported as
False, so duplicate or late answers from a UI are harmless. There is no
timeout here; a host that wants one wraps ``wait`` itself.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Iterable, Optional

import structlog

from familiar.config import PermRule
from familiar.tools.registry import RISK_TIER_POLICIES, RiskTier, ToolRegistry

logger = structlog.get_logger(__name__)


class TrustMode(str, Enum):
    PROMPT = "prompt"
    FULL = "full"
    CUSTOM = "custom"


class Verdict(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    PENDING = "pending"


@dataclass
class PermissionDecision:
    verdict: Verdict
    reason: str = ""
    request_id: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.verdict is Verdict.APPROVED


def call_subject(subject_key: Optional[str], arguments: dict[str, Any]) -> str:
    """The string a rule's argument pattern is matched against."""
    if subject_key and subject_key in arguments:
        return str(arguments[subject_key])
    return json.dumps(arguments, sort_keys=True, separators=(",", ":"), default=str)


class PermissionGate:
    """Decides per tool call and holds the calls waiting on a human."""

    def __init__(
        self,
        registry: ToolRegistry,
        trust_mode: TrustMode | str = TrustMode.PROMPT,
        rules: Iterable[PermRule] = (),
    ):
        self._registry = registry
        self._trust_mode = TrustMode(trust_mode)
        self._rules: list[PermRule] = list(rules)
        self._pending: dict[str, asyncio.Future[bool]] = {}
        self._pending_tools: dict[str, str] = {}

        self._approved = 0
        self._denied = 0
        self._asked = 0

        logger.info(
            "permission_gate.initialized",
            trust_mode=self._trust_mode.value,
            rules=len(self._rules),
        )

    def configure(self, trust_mode: TrustMode | str, rules: Iterable[PermRule] = ()) -> None:
        self._trust_mode = TrustMode(trust_mode)
        self._rules = list(rules)
        logger.info(
            "permission_gate.reconfigured",
            trust_mode=self._trust_mode.value,
            rules=len(self._rules),
        )

    @property
    def trust_mode(self) -> TrustMode:
        return self._trust_mode

    @property
    def rules(self) -> tuple[PermRule, ...]:
        return tuple(self._rules)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate(self, tool_name: str, arguments: dict[str, Any]) -> PermissionDecision:
        """
        Classify one call. A PENDING decision has already registered its
        resolution slot; the caller must ``wait`` on ``request_id``.
        """
        if self._trust_mode is TrustMode.FULL:
            return self._approve(tool_name, "full trust")

        if self._trust_mode is TrustMode.CUSTOM:
            rule = self._match_rule(tool_name, arguments)
            if rule is not None:
                if rule.allow:
                    return self._approve(tool_name, f"allowed by rule '{rule}'")
                return self._deny(tool_name, f"denied by rule '{rule}'")

        return self._prompt_policy(tool_name)

    def _prompt_policy(self, tool_name: str) -> PermissionDecision:
        tool = self._registry.get(tool_name)
        tier = tool.risk_tier if tool is not None else RiskTier.HIGH
        if not RISK_TIER_POLICIES[tier]["require_approval"]:
            return self._approve(tool_name, "classified safe")
        return self._ask(tool_name)

    def _match_rule(self, tool_name: str, arguments: dict[str, Any]) -> Optional[PermRule]:
        tool = self._registry.get(tool_name)
        subject = call_subject(tool.subject_key if tool else None, arguments)
        for rule in self._rules:
            if not fnmatchcase(tool_name, rule.tool):
                continue
            if rule.pattern is not None and not fnmatchcase(subject, rule.pattern):
                continue
            return rule
        return None

    def _approve(self, tool_name: str, reason: str) -> PermissionDecision:
        self._approved += 1
        logger.debug("permission_gate.approved", tool=tool_name, reason=reason)
        return PermissionDecision(Verdict.APPROVED, reason)

    def _deny(self, tool_name: str, reason: str) -> PermissionDecision:
        self._denied += 1
        logger.info("permission_gate.denied", tool=tool_name, reason=reason)
        return PermissionDecision(Verdict.DENIED, reason)

    def _ask(self, tool_name: str) -> PermissionDecision:
        request_id = uuid.uuid4().hex[:12]
        self._pending[request_id] = asyncio.get_running_loop().create_future()
        self._pending_tools[request_id] = tool_name
        self._asked += 1
        logger.info("permission_gate.pending", tool=tool_name, request_id=request_id)
        return PermissionDecision(Verdict.PENDING, "requires approval", request_id)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def wait(self, request_id: str) -> bool:
        """Block until the request is resolved; True means allowed."""
        future = self._pending.get(request_id)
        if future is None:
            raise KeyError(f"No pending permission request {request_id!r}")
        try:
            return await asyncio.shield(future)
        finally:
            if future.done():
                self._forget(request_id)

    def respond(self, request_id: str, allowed: bool) -> bool:
        """Resolve a pending request. Returns False for unknown/resolved ids."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.debug("permission_gate.response_ignored", request_id=request_id)
            return False
        future.set_result(bool(allowed))
        logger.info(
            "permission_gate.resolved",
            request_id=request_id,
            tool=self._pending_tools.get(request_id),
            allowed=bool(allowed),
        )
        return True

    def deny_all(self) -> int:
        """Resolve every outstanding request as denied. Returns how many."""
        count = 0
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_result(False)
                count += 1
            self._forget(request_id)
        if count:
            logger.info("permission_gate.denied_pending", count=count)
        return count

    def is_pending(self, request_id: str) -> bool:
        future = self._pending.get(request_id)
        return future is not None and not future.done()

    @property
    def pending_count(self) -> int:
        return sum(1 for f in self._pending.values() if not f.done())

    def _forget(self, request_id: str) -> None:
        self._pending.pop(request_id, None)
        self._pending_tools.pop(request_id, None)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "trust_mode": self._trust_mode.value,
            "approved": self._approved,
            "denied": self._denied,
            "asked": self._asked,
            "pending": self.pending_count,
        }
