"""
Stop-loss gate.

Two checkpoints contain repeated failures:

* the threshold check before a pop refuses tasks that already carry a
  stop-loss record, unless a human approved a retry;
* the post-execution classifier turns a failed dispatch into a failure
  type, and ``apply_stop_loss`` blocks the task and records why.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .dispatch import DispatchOutcome, DispatchState
from .errors import ErrorCode, OpResult
from .meta import StopLossRecord, TaskMeta, now_iso

if TYPE_CHECKING:
    from .policy import PolicyLoadResult

logger = logging.getLogger(__name__)

MAX_REASON_CHARS = 240


class FailureType(StrEnum):
    REJECTED = "REJECTED"
    BLOCKED = "BLOCKED"
    GATED = "GATED"
    REPAIR_FAILED = "REPAIR_FAILED"
    TIMEOUT = "TIMEOUT"
    DISPATCH_ERROR = "DISPATCH_ERROR"
    MISSING_ARTIFACT = "MISSING_ARTIFACT"


FAILURE_REASONS = {
    FailureType.REJECTED: "Contract validation failed (repair exhausted)",
    FailureType.BLOCKED: "Dispatch blocked by governance gate",
    FailureType.GATED: "Governance review required but not resolved",
    FailureType.REPAIR_FAILED: "Dispatched but repair failed with no artifact",
    FailureType.TIMEOUT: "Dispatch timed out",
    FailureType.DISPATCH_ERROR: "Dispatch raised a provider error",
    FailureType.MISSING_ARTIFACT: "Dispatch reported an artifact that could not be fetched",
}


@dataclass
class ThresholdVerdict:
    allowed: bool
    reason: str


def check_threshold(meta: TaskMeta) -> ThresholdVerdict:
    """Pre-pop check: a stop-lossed task runs again only with an approved retry."""
    if not meta.stop_loss_triggered:
        return ThresholdVerdict(True, "no_stop_loss")
    if meta.retry_approved and meta.stop_loss_after_retry is None:
        return ThresholdVerdict(True, "retry_approved")
    return ThresholdVerdict(False, "stop_loss_already_triggered")


def classify_outcome(outcome: DispatchOutcome | None) -> FailureType | None:
    """Map a dispatch outcome to a failure type, or None when it succeeded."""
    if outcome is None:
        return FailureType.DISPATCH_ERROR
    match outcome.state:
        case DispatchState.REJECTED:
            return FailureType.REJECTED
        case DispatchState.BLOCKED:
            return FailureType.BLOCKED
        case DispatchState.GATED:
            return FailureType.GATED
        case DispatchState.TIMEOUT:
            return FailureType.TIMEOUT
        case DispatchState.ERROR:
            return FailureType.DISPATCH_ERROR
        case DispatchState.DISPATCHED:
            if outcome.repair_attempted and not outcome.repair_succeeded and not outcome.artifact_id:
                return FailureType.REPAIR_FAILED
    return None


def is_listed_trigger(loaded: PolicyLoadResult, failure_type: FailureType) -> bool:
    """Whether the policy names this failure type as a stop-loss trigger.

    Unlisted failures are still blocked; this only drives the audit note.
    """
    if not loaded.ok or loaded.policy is None:
        return True
    return failure_type.value in loaded.policy.stop_loss_triggers


async def apply_stop_loss(
    session: AsyncSession,
    task_id: str,
    *,
    reason: str,
    step: str,
    owner: str,
    failure_type: FailureType | str | None = None,
    run_id: str | None = None,
) -> OpResult:
    """Block a task and record the failure. Guarded against double application."""
    reason = (reason or "").strip()
    if not reason or len(reason) > MAX_REASON_CHARS:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT,
            f"reason is required and must be at most {MAX_REASON_CHARS} characters",
            task_id=task_id,
        )
    if not step or not step.strip():
        return OpResult.failure(ErrorCode.INVALID_ARGUMENT, "step is required", task_id=task_id)

    task = await db.get_task(session, task_id)
    if task is None:
        return OpResult.failure(ErrorCode.TASK_NOT_FOUND, task_id=task_id)

    meta = TaskMeta.of(task.metadata_)
    record = StopLossRecord(
        reason=reason,
        step=step.strip(),
        owner=owner,
        failure_type=str(failure_type) if failure_type else None,
        run_id=run_id,
        triggered_at=now_iso(),
    )
    if meta.stop_loss is None:
        meta.stop_loss = record
    elif meta.retry_approved and meta.stop_loss_after_retry is None:
        meta.stop_loss_after_retry = record
    else:
        return OpResult.failure(
            ErrorCode.ALREADY_TRIGGERED,
            "stop-loss already applied to this task",
            task_id=task_id,
            human_review_required=True,
        )

    if task.status not in ("todo", "doing"):
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED,
            f"cannot stop-loss a task in status '{task.status}'",
            task_id=task_id,
            status=task.status,
        )

    before = task.status
    meta.hil_required = True
    if not await db.transition_task(
        session, task, from_status=before, to_status="blocked", metadata=meta.dump()
    ):
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED,
            "task status changed concurrently",
            task_id=task_id,
        )

    audit_session = await db.audit_session_id(session, task)
    action = await db.log_action(
        session,
        audit_session,
        actor=owner,
        type="stop_loss",
        status="blocked",
        reason=reason,
        input_ref=task.id,
        output_ref=run_id,
        metadata={
            "step": record.step,
            "failure_type": record.failure_type,
            "before_status": before,
            "after_status": "blocked",
            "after_retry": meta.stop_loss_after_retry is record,
        },
    )
    logger.warning("Stop-loss applied to task %s at step %s (%s)", task.id, record.step, record.failure_type)
    return OpResult.success(
        task_id=task.id,
        status="blocked",
        action_id=action.id,
        failure_type=record.failure_type,
        human_review_required=True,
    )
