"""
One governance triage cycle: pop, route, dispatch, contain, close.

There is no loop here. Each invocation evaluates every gate exactly once
for at most one task; a caller that wants another task calls again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from . import db, lifecycle
from .dispatch import DispatchOutcome, DispatchState, Dispatcher
from .errors import ErrorCode, LedgerStoreError, OpResult, store_failure
from .policy import PolicyRepository
from .router import MAX_GOAL_CHARS, Router, parse_router_output
from .stop_loss import (
    FAILURE_REASONS,
    FailureType,
    apply_stop_loss,
    classify_outcome,
    is_listed_trigger,
)

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_RETRY_MS = 750


@dataclass
class TriageConfig:
    actor: str = "cos"
    session_id: str | None = None
    owner: str | None = None
    close_on_success: bool = True


class GovernanceTriage:
    """Wires the gates, router and dispatcher for a single cycle."""

    def __init__(
        self,
        ledger: db.Ledger,
        policy: PolicyRepository,
        router: Router,
        dispatcher: Dispatcher,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.policy = policy
        self.router = router
        self.dispatcher = dispatcher
        self._sleep = sleep

    async def run_cycle(self, config: TriageConfig | None = None) -> OpResult:
        config = config or TriageConfig()
        try:
            return await self._run(config)
        except LedgerStoreError as e:
            logger.error("Triage aborted by store failure: %s", e.message)
            return store_failure(e)

    async def _run(self, config: TriageConfig) -> OpResult:
        async with self.ledger.session() as session:
            popped = await lifecycle.pop_next_task(
                session,
                self.policy,
                session_id=config.session_id,
                owner=config.owner,
                exclude_stub=True,
                actor=config.actor,
            )
        if not popped.ok or popped.data.get("task") is None:
            return popped

        task = popped.data["task"]
        run_id = popped.data["run_id"]
        outcome = await self._route_and_dispatch(task, run_id)

        failure = classify_outcome(outcome)
        if failure is None:
            artifact_id = await self._fetch_artifact(outcome.artifact_id)
            if artifact_id is None:
                failure = FailureType.MISSING_ARTIFACT
        if failure is not None:
            return await self._contain(task, run_id, outcome, failure, config)

        if not config.close_on_success:
            return OpResult.success(
                task_id=task["id"], run_id=run_id, dispatch=outcome.to_dict(), status="doing"
            )
        async with self.ledger.session() as session:
            closed = await lifecycle.close_task(
                session,
                task["id"],
                reason=f"dispatched to {outcome.agent}; artifact {artifact_id}",
                artifact_id=artifact_id,
                closed_by=config.actor,
            )
        closed.data.update(run_id=run_id, dispatch=outcome.to_dict())
        return closed

    async def _route_and_dispatch(self, task: dict[str, Any], run_id: str) -> DispatchOutcome:
        goal = "\n".join(p for p in (task["title"], task.get("details")) if p)[:MAX_GOAL_CHARS]
        payload = {
            "request_id": f"triage-{run_id}",
            "session_id": task["session_id"] or db.OPS_SESSION_ID,
            "timestamp": datetime.now(UTC).isoformat(),
            "initiator": "system",
            "goal_text": goal,
            "constraints": {
                "no_public_exposure": True,
                "structured_outputs_only": True,
                "on_demand_only": True,
            },
            "context": {"task_id": task["id"], "source": "triage"},
            "run_id": run_id,
        }
        async with self.ledger.session() as session:
            routed = await self.router.route(session, payload)

        if routed.error == ErrorCode.GOVERNANCE_DENIED:
            return DispatchOutcome(
                DispatchState.BLOCKED, routed.detail or "governance denied", payload["session_id"]
            )
        if not routed.ok:
            return DispatchOutcome(
                DispatchState.ERROR, f"{routed.error}: {routed.detail}", payload["session_id"]
            )
        return await self.dispatcher.dispatch(parse_router_output(routed.data["router_output"]))

    async def _fetch_artifact(self, artifact_id: str | None) -> str | None:
        """Look the artifact up, waiting once for write visibility if needed."""
        if artifact_id is None:
            return None
        async with self.ledger.session() as session:
            if await db.get_artifact(session, artifact_id) is not None:
                return artifact_id

        loaded = self.policy.load()
        delay_ms = loaded.policy.artifact_retry_once_ms if loaded.policy else DEFAULT_ARTIFACT_RETRY_MS
        await self._sleep(delay_ms / 1000)
        async with self.ledger.session() as session:
            if await db.get_artifact(session, artifact_id) is not None:
                return artifact_id
        return None

    async def _contain(
        self,
        task: dict[str, Any],
        run_id: str,
        outcome: DispatchOutcome,
        failure: FailureType,
        config: TriageConfig,
    ) -> OpResult:
        if not is_listed_trigger(self.policy.load(), failure):
            logger.warning("Failure %s is not a listed stop-loss trigger; blocking anyway", failure)
        async with self.ledger.session() as session:
            stopped = await apply_stop_loss(
                session,
                task["id"],
                reason=FAILURE_REASONS[failure],
                step="dispatch",
                owner=config.actor,
                failure_type=failure,
                run_id=run_id,
            )
        return OpResult.failure(
            ErrorCode.DISPATCH_FAILED,
            FAILURE_REASONS[failure],
            task_id=task["id"],
            human_review_required=True,
            run_id=run_id,
            failure_type=failure.value,
            dispatch=outcome.to_dict(),
            stop_loss=stopped.to_dict(),
        )
