"""
Request intake, rule-based intent classification and routing.

Routing is pure rule evaluation: an ordered list of keyword rules is
matched against the goal text and the first match wins. Every routed
request produces a ``route`` action and a governance Decision before any
agent is invoked.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    ValidationError,
    field_validator,
)
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import ErrorCode, OpResult
from .governance import MANDATORY_CONSTRAINTS, GateDecision, GateResult, evaluate_gate
from .intents import FALLBACK_INTENT, Intent
from .models import WorkSession
from .registry import Registry

logger = logging.getLogger(__name__)

ROUTER_OUTPUT_VERSION = "v1"
MAX_GOAL_CHARS = 2000
GOVERNANCE_AGENT = "governance"


@dataclass(frozen=True)
class IntentRule:
    intent: Intent
    primary_agent: str
    keywords: tuple[str, ...]


# Order matters: the first rule with a matching keyword wins.
INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        Intent.GOVERNANCE_REVIEW,
        "governance",
        ("risk", "block", "approve", "deny", "compliance", "policy", "control", "audit", "gate",
         "review risk"),
    ),
    IntentRule(
        Intent.PLAN_WORK,
        "cos",
        ("plan", "route", "task", "schedule", "brief", "assign", "orchestrate", "prioritise",
         "prioritize"),
    ),
    IntentRule(
        Intent.SALES_INTERNAL,
        "sales",
        ("sale", "pipeline", "qualify", "prospect", "script", "deal", "revenue", "close",
         "outreach plan"),
    ),
    IntentRule(
        Intent.MARKETING_INTERNAL,
        "marketing_pr",
        ("market", "position", "brand", "pr", "content plan", "messaging", "campaign", "audience",
         "publish plan"),
    ),
    IntentRule(
        Intent.PRODUCT_OFFER,
        "product_offer",
        ("product", "offer", "scope", "price", "package", "roadmap", "feature", "requirement",
         "spec"),
    ),
    IntentRule(
        Intent.OPS_INTERNAL,
        "ops",
        ("sop", "checklist", "process", "procedure", "ops", "execute", "run", "deploy plan",
         "workflow"),
    ),
)


@dataclass
class Classification:
    intent: Intent
    primary_agent: str
    matched_keyword: str | None
    defaulted: bool


def classify(goal_text: str) -> Classification:
    """Return exactly one intent for the goal text."""
    lowered = goal_text.lower()
    for rule in INTENT_RULES:
        for keyword in rule.keywords:
            if keyword in lowered:
                return Classification(rule.intent, rule.primary_agent, keyword, defaulted=False)
    return Classification(FALLBACK_INTENT, GOVERNANCE_AGENT, None, defaulted=True)


# =============================================================================
# Schemas
# =============================================================================


class RequestConstraints(BaseModel):
    model_config = ConfigDict(extra="allow")

    no_public_exposure: StrictBool
    structured_outputs_only: StrictBool
    on_demand_only: StrictBool


class RiskFlags(BaseModel):
    architecture_change: StrictBool = False
    deployment: StrictBool = False
    external_comms: StrictBool = False


class RouterRequest(BaseModel):
    """Inbound work request."""

    model_config = ConfigDict(extra="forbid")

    request_id: str = Field(min_length=1, validation_alias=AliasChoices("request_id", "id"))
    session_id: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    initiator: str = Field(min_length=1)
    goal_text: str = Field(min_length=1, max_length=MAX_GOAL_CHARS)
    constraints: RequestConstraints
    context: dict[str, Any] = Field(default_factory=dict)
    risk_flags: RiskFlags | None = None
    run_id: str | None = None

    @field_validator("request_id", "session_id", "timestamp", "initiator", "goal_text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class Route(BaseModel):
    intent: Intent
    primary_agent: str
    secondary_agents: list[str]
    governance_required: bool
    constraints_applied: list[str]
    notes: list[str] = Field(default_factory=list)


class PlanStep(BaseModel):
    step: int
    action: str
    agent: str
    description: str


class RouterOutput(BaseModel):
    """Versioned router output handed to dispatch."""

    model_config = ConfigDict(extra="forbid")

    router_output_version: Literal["v1"]
    request_id: str
    session_id: str
    ts_routed: str
    intent: Intent
    route: Route
    gate_decision: GateDecision
    gate_flags: list[str]
    requires_governance_review: bool
    plan: list[PlanStep]
    original_request: dict[str, Any]
    run_id: str | None = None


class RouterOutputVersionError(ValueError):
    code = ErrorCode.ROUTER_OUTPUT_VERSION_MISMATCH


def parse_router_output(data: dict[str, Any]) -> RouterOutput:
    """Parse router output, refusing any other schema version.

    Raises:
        ValueError: the document is not a JSON object.
        RouterOutputVersionError: version field missing or not ``v1``.
        pydantic.ValidationError: any other schema violation.
    """
    if not isinstance(data, dict):
        raise ValueError("router output must be a JSON object")
    version = data.get("router_output_version")
    if version != ROUTER_OUTPUT_VERSION:
        raise RouterOutputVersionError(
            f"router_output_version {version!r} != {ROUTER_OUTPUT_VERSION!r}"
        )
    return RouterOutput.model_validate(data)


def _validation_errors(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {"path": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]} for err in exc.errors()
    ]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# =============================================================================
# Router
# =============================================================================


class Router:
    """Classifies requests and records governance verdicts in the ledger."""

    def __init__(self, registry: Registry, *, actor: str = "router") -> None:
        self.registry = registry
        self.actor = actor

    def validate(self, payload: dict[str, Any]) -> RouterRequest | OpResult:
        try:
            return RouterRequest.model_validate(payload)
        except ValidationError as e:
            return OpResult.failure(
                ErrorCode.VALIDATION_FAILED, "request failed intake validation",
                errors=_validation_errors(e),
            )

    async def route(self, session: AsyncSession, payload: dict[str, Any]) -> OpResult:
        """Validate, classify, gate and record one request.

        On approval the result carries ``router_output``; a denial carries
        only the decision id and gate flags.
        """
        request = self.validate(payload)
        if isinstance(request, OpResult):
            return request

        classification = classify(request.goal_text)
        rule = self.registry.rule_for(classification.intent)
        if rule is None:
            return OpResult.failure(
                ErrorCode.ROUTING_RULE_MISSING,
                f"no routing rule for intent {classification.intent.value}",
            )

        constraints = request.constraints.model_dump()
        gate = evaluate_gate(
            goal_text=request.goal_text,
            initiator=request.initiator,
            constraints=constraints,
            intent=classification.intent,
            rule_requires_review=rule.requires_governance_review,
            risk_flags=request.risk_flags.model_dump() if request.risk_flags else None,
        )

        initiator = request.initiator if request.initiator in ("user", "system") else "system"
        work_session = await db.ensure_work_session(session, request.session_id, initiator=initiator)
        inbound = await db.add_message(
            session,
            work_session.id,
            role=initiator,
            content=request.goal_text,
            metadata={"request_id": request.request_id, "constraints": constraints},
        )

        if gate.decision == GateDecision.DENY:
            return await self._record_denial(
                session, work_session, request, classification.intent, gate, inbound.id
            )

        output = self._build_output(request, classification, rule.primary_agent,
                                    rule.secondary_agents, gate)
        output_json = output.model_dump(mode="json")
        action = await db.log_action(
            session,
            work_session.id,
            actor=self.actor,
            type="route",
            status="ok",
            reason=f"intent={output.intent.value} gate={gate.decision.value}",
            input_ref=inbound.id,
            output_ref=request.request_id,
            metadata={"gate": gate.to_dict(), "run_id": request.run_id},
        )
        await db.add_message(
            session,
            work_session.id,
            role="system",
            agent_name=self.actor,
            content=json.dumps(output_json, sort_keys=True),
            metadata={"request_id": request.request_id, "action_id": action.id},
        )
        decision = await db.add_decision(
            session,
            work_session.id,
            decision_type=gate.decision.value,
            subject=f"Route request {request.request_id} to {output.route.primary_agent}",
            options={"intent": output.intent.value, "flags": gate.flags},
            selected_option=output.route.primary_agent,
            rationale=", ".join(gate.reasons) or "no risk indicators",
            approved_by="governance_gate",
            metadata={"request_id": request.request_id},
        )
        logger.info(
            "Routed %s -> %s (%s)", request.request_id, output.intent.value, gate.decision.value
        )
        return OpResult.success(
            router_output=output_json,
            decision_id=decision.id,
            action_id=action.id,
        )

    async def _record_denial(
        self,
        session: AsyncSession,
        work_session: WorkSession,
        request: RouterRequest,
        intent: Intent,
        gate: GateResult,
        inbound_id: str,
    ) -> OpResult:
        await db.log_action(
            session,
            work_session.id,
            actor=self.actor,
            type="route",
            status="blocked",
            reason="governance gate denied request",
            input_ref=inbound_id,
            output_ref=request.request_id,
            metadata={"gate": gate.to_dict(), "intent": intent.value, "run_id": request.run_id},
        )
        decision = await db.add_decision(
            session,
            work_session.id,
            decision_type=GateDecision.DENY.value,
            subject=f"Route request {request.request_id}",
            options={"intent": intent.value, "flags": gate.flags},
            selected_option="deny",
            rationale="; ".join(gate.flags),
            approved_by="governance_gate",
            metadata={"request_id": request.request_id},
        )
        await db.flag_work_session(session, work_session, f"request {request.request_id} denied")
        logger.warning("Request %s denied: %s", request.request_id, gate.flags)
        return OpResult.failure(
            ErrorCode.GOVERNANCE_DENIED,
            "request denied by governance gate",
            human_review_required=True,
            decision_id=decision.id,
            session_id=work_session.id,
            gate_flags=gate.flags,
        )

    def _build_output(
        self,
        request: RouterRequest,
        classification: Classification,
        primary_agent: str,
        secondary_agents: list[str],
        gate: GateResult,
    ) -> RouterOutput:
        governance_required = gate.requires_review
        secondary = [a for a in secondary_agents if a != primary_agent]
        if governance_required and primary_agent != GOVERNANCE_AGENT:
            secondary = [GOVERNANCE_AGENT, *[a for a in secondary if a != GOVERNANCE_AGENT]]

        steps: list[PlanStep] = []
        if governance_required:
            steps.append(
                PlanStep(
                    step=1,
                    action="governance_check",
                    agent=GOVERNANCE_AGENT,
                    description="Route flagged: governance must review before dispatch.",
                )
            )
        steps.append(
            PlanStep(
                step=len(steps) + 1,
                action="dispatch",
                agent=primary_agent,
                description=f"Dispatch to {primary_agent} for intent {classification.intent.value}.",
            )
        )

        constraints = request.constraints.model_dump()
        return RouterOutput(
            router_output_version=ROUTER_OUTPUT_VERSION,
            request_id=request.request_id,
            session_id=request.session_id,
            ts_routed=_now_iso(),
            intent=classification.intent,
            route=Route(
                intent=classification.intent,
                primary_agent=primary_agent,
                secondary_agents=secondary,
                governance_required=governance_required,
                constraints_applied=[k for k in MANDATORY_CONSTRAINTS if constraints.get(k)],
                notes=["unclassified_default=true"] if classification.defaulted else [],
            ),
            gate_decision=gate.decision,
            gate_flags=gate.flags,
            requires_governance_review=governance_required,
            plan=steps,
            original_request={
                "goal_text": request.goal_text,
                "constraints": constraints,
                "context": request.context,
            },
            run_id=request.run_id,
        )
