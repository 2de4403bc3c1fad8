"""
Governance gate: deterministic deny / approve / approve-with-flag verdicts
for routed requests.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .intents import Intent

MANDATORY_CONSTRAINTS = ("no_public_exposure", "structured_outputs_only", "on_demand_only")
VALID_INITIATORS = {"user", "system"}

BLOCK_PHRASES = [
    "public api",
    "saas",
    "vps",
    "scale out",
    "redis",
    "bigquery",
    "publish to",
    "send email",
    "send sms",
    "post to",
]
FLAG_PHRASES = [
    "external",
    "client data",
    "security",
    "credential",
    "key",
    "token",
    "export",
    "architecture change",
]
SENSITIVE_INTENTS = {Intent.GOVERNANCE_REVIEW}
INTERNAL_QUALIFIER = "internal"
QUALIFIER_WINDOW = 20


class GateDecision(StrEnum):
    DENY = "deny"
    APPROVE = "approve"
    APPROVE_WITH_FLAG = "approve_with_flag"


@dataclass
class GateResult:
    decision: GateDecision
    flags: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def requires_review(self) -> bool:
        return self.decision != GateDecision.APPROVE

    def to_dict(self) -> dict[str, Any]:
        return {"decision": self.decision.value, "flags": self.flags, "reasons": self.reasons}


def _qualified_internal(text: str, start: int, end: int) -> bool:
    window = text[max(0, start - QUALIFIER_WINDOW) : end + QUALIFIER_WINDOW]
    return INTERNAL_QUALIFIER in window


def unqualified_block_phrases(text: str) -> list[str]:
    """High-risk phrases that occur without a nearby "internal" qualifier."""
    lowered = text.lower()
    hits: list[str] = []
    for phrase in BLOCK_PHRASES:
        for match in re.finditer(re.escape(phrase), lowered):
            if not _qualified_internal(lowered, match.start(), match.end()):
                hits.append(phrase)
                break
    return hits


def flag_phrases(text: str) -> list[str]:
    lowered = text.lower()
    return [phrase for phrase in FLAG_PHRASES if phrase in lowered]


def evaluate_gate(
    *,
    goal_text: str,
    initiator: str,
    constraints: dict[str, Any],
    intent: Intent,
    rule_requires_review: bool,
    risk_flags: dict[str, bool] | None = None,
) -> GateResult:
    """Evaluate block, flag and pass tiers in priority order."""
    risk_flags = risk_flags or {}

    block: list[str] = []
    for name in MANDATORY_CONSTRAINTS:
        if constraints.get(name) is not True:
            block.append(f"constraint:{name}")
    if initiator not in VALID_INITIATORS:
        block.append(f"initiator:{initiator}")
    block.extend(f"phrase:{p}" for p in unqualified_block_phrases(goal_text))
    for name in ("architecture_change", "deployment"):
        if risk_flags.get(name):
            block.append(f"risk_flag:{name}")
    if block:
        return GateResult(GateDecision.DENY, flags=block, reasons=["blocked"])

    flags: list[str] = []
    reasons: list[str] = []
    if intent in SENSITIVE_INTENTS:
        flags.append(f"intent:{intent.value}")
        reasons.append("sensitive_intent")
    phrases = flag_phrases(goal_text)
    if phrases:
        flags.extend(f"phrase:{p}" for p in phrases)
        reasons.append("risk_phrase")
    if risk_flags.get("external_comms"):
        flags.append("risk_flag:external_comms")
        reasons.append("risk_flag")
    if rule_requires_review:
        flags.append("routing_rule:requires_governance_review")
        reasons.append("routing_rule")
    if flags:
        return GateResult(GateDecision.APPROVE_WITH_FLAG, flags=flags, reasons=reasons)
    return GateResult(GateDecision.APPROVE)
