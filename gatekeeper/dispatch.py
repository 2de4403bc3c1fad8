"""
Agent dispatch for routed requests.

The provider call happens outside any ledger transaction and is bounded by
a timeout. Output is checked against the agent's contract; one repair
attempt is allowed before the dispatch is rejected.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from . import db
from .contract import ContractViolation, validate_against_contract
from .meta import TaskMeta
from .providers import ChatMessage, ChatProvider, ProviderError

if TYPE_CHECKING:
    from .registry import AgentSpec, Registry
    from .router import RouterOutput

logger = logging.getLogger(__name__)

ORIGIN_TAG = "origin:automated_dispatch"


class DispatchState(StrEnum):
    BLOCKED = "BLOCKED"
    GATED = "GATED"
    DISPATCHED = "DISPATCHED"
    REJECTED = "REJECTED"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


@dataclass
class DispatchOutcome:
    state: DispatchState
    reason: str
    session_id: str | None = None
    agent: str | None = None
    intent: str | None = None
    artifact_id: str | None = None
    follow_up_task_id: str | None = None
    action_id: str | None = None
    repair_attempted: bool = False
    repair_succeeded: bool = False
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == DispatchState.DISPATCHED

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason,
            "session_id": self.session_id,
            "agent": self.agent,
            "intent": self.intent,
            "artifact_id": self.artifact_id,
            "follow_up_task_id": self.follow_up_task_id,
            "action_id": self.action_id,
            "repair_attempted": self.repair_attempted,
            "repair_succeeded": self.repair_succeeded,
            "errors": self.errors,
        }


def _action_status(state: DispatchState) -> str:
    if state == DispatchState.DISPATCHED:
        return "ok"
    if state in (DispatchState.BLOCKED, DispatchState.GATED):
        return "blocked"
    return "failed"


class _CallFailed(Exception):
    def __init__(self, state: DispatchState, reason: str) -> None:
        super().__init__(reason)
        self.state = state
        self.reason = reason


def _parse_output(raw: str) -> tuple[Any, list[ContractViolation]]:
    try:
        return json.loads(raw), []
    except (json.JSONDecodeError, TypeError) as e:
        return None, [ContractViolation("OUTPUT_NOT_JSON", "", str(e))]


class Dispatcher:
    """Sends routed requests to the assigned agent and records the result."""

    def __init__(
        self,
        ledger: db.Ledger,
        registry: Registry,
        provider: ChatProvider,
        *,
        timeout_seconds: float = 120.0,
        actor: str = "dispatcher",
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.actor = actor

    async def dispatch(self, routed: RouterOutput) -> DispatchOutcome:
        agent_name = routed.route.primary_agent
        intent = routed.intent.value
        outcome = DispatchOutcome(
            state=DispatchState.DISPATCHED,
            reason="",
            session_id=routed.session_id,
            agent=agent_name,
            intent=intent,
        )

        agent = self.registry.agent(agent_name)
        if agent is None:
            outcome.state = DispatchState.ERROR
            outcome.reason = f"agent {agent_name} is not registered"
            return await self._record(routed, outcome)

        if routed.requires_governance_review:
            async with self.ledger.session() as session:
                approved = await db.has_approved_override(session, routed.session_id, intent)
            if not approved:
                outcome.state = DispatchState.GATED
                outcome.reason = "governance review required and no approved override"
                return await self._record(routed, outcome)

        try:
            output, errors = await self._call(agent, routed, repair_of=None)
            if errors:
                outcome.repair_attempted = True
                output, errors = await self._call(agent, routed, repair_of=errors)
                outcome.repair_succeeded = not errors
        except _CallFailed as failed:
            outcome.state = failed.state
            outcome.reason = failed.reason
            return await self._record(routed, outcome)

        if errors:
            outcome.state = DispatchState.REJECTED
            outcome.reason = "contract validation failed (repair exhausted)"
            outcome.errors = [e.to_dict() for e in errors]
            return await self._record(routed, outcome)

        outcome.reason = "contract validated"
        return await self._record(routed, outcome, output=output)

    async def _call(
        self,
        agent: AgentSpec,
        routed: RouterOutput,
        *,
        repair_of: list[ContractViolation] | None,
    ) -> tuple[Any, list[ContractViolation]]:
        messages = self._messages(agent, routed, repair_of)
        try:
            response = await asyncio.wait_for(
                self.provider.chat(messages), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            raise _CallFailed(
                DispatchState.TIMEOUT, f"provider call exceeded {self.timeout_seconds}s"
            ) from e
        except ProviderError as e:
            raise _CallFailed(DispatchState.ERROR, str(e)) from e

        output, errors = _parse_output(response.content)
        if not errors:
            errors = validate_against_contract(agent, output)
        return output, errors

    def _messages(
        self, agent: AgentSpec, routed: RouterOutput, repair_of: list[ContractViolation] | None
    ) -> list[ChatMessage]:
        contract = agent.contract
        system = (
            f"You are the {agent.name} agent ({agent.version}). {agent.purpose}\n"
            "Return a single JSON object only. Draft internal material; never propose "
            "actions that publish, send or deploy anything.\n"
            f"Required fields: {', '.join(contract.required_fields)}. "
            f"Allowed output types: {', '.join(contract.output_types) or 'any'}."
        )
        request = {
            "agent": agent.name,
            "agent_version": agent.version,
            "intent": routed.intent.value,
            "goal_text": routed.original_request.get("goal_text", ""),
            "context": routed.original_request.get("context", {}),
            "output_types": contract.output_types,
        }
        if repair_of:
            request["repair"] = {
                "instruction": "Your previous output failed contract validation. Fix ALL listed errors.",
                "errors": [e.to_dict() for e in repair_of],
            }
        return [
            ChatMessage("system", system),
            ChatMessage("user", json.dumps(request, ensure_ascii=False)),
        ]

    async def _record(
        self, routed: RouterOutput, outcome: DispatchOutcome, *, output: Any = None
    ) -> DispatchOutcome:
        async with self.ledger.session() as session:
            await db.ensure_work_session(session, routed.session_id)
            if output is not None:
                await self._write_output(session, routed, outcome, output)
            action = await db.log_action(
                session,
                routed.session_id,
                actor=self.actor,
                type="dispatch",
                status=_action_status(outcome.state),
                reason=outcome.reason,
                input_ref=routed.request_id,
                output_ref=outcome.artifact_id,
                metadata={**outcome.to_dict(), "run_id": routed.run_id},
            )
            outcome.action_id = action.id
        log = logger.info if outcome.ok else logger.warning
        log("Dispatch %s -> %s: %s", routed.request_id, outcome.agent, outcome.state.value)
        return outcome

    async def _write_output(
        self, session: Any, routed: RouterOutput, outcome: DispatchOutcome, output: dict[str, Any]
    ) -> None:
        content = json.dumps(output, ensure_ascii=False, sort_keys=True)
        await db.add_message(
            session, routed.session_id, role="agent", agent_name=outcome.agent, content=content
        )
        first_type = output["outputs"][0]["type"] if output.get("outputs") else "agent_output"
        artifact = await db.add_artifact(
            session,
            routed.session_id,
            type=first_type,
            title=str(output.get("summary", ""))[:120],
            content=content,
            classification="internal",
            tags=[ORIGIN_TAG, f"agent:{outcome.agent}", f"provider:{self.provider.name}"],
            metadata={
                "agent": outcome.agent,
                "intent": outcome.intent,
                "request_id": routed.request_id,
                "run_id": routed.run_id,
                "repair_attempted": outcome.repair_attempted,
            },
        )
        outcome.artifact_id = artifact.id

        next_actions = output.get("next_actions") or []
        if next_actions:
            first = next_actions[0]
            meta = TaskMeta(intent=outcome.intent, source="stub")
            task = await db.create_task(
                session,
                title=first["title"],
                details=first.get("details"),
                owner_agent=first.get("owner_agent"),
                session_id=routed.session_id,
                metadata={**meta.dump(), "artifact_id": artifact.id},
            )
            outcome.follow_up_task_id = task.id
