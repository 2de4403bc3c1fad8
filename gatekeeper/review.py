"""
Human review: the only path that clears a stop-loss or policy block.

Each decision is guarded against re-application independently:

* retry  - override Decision, ``blocked -> todo``, history kept
* close  - ``blocked -> done``
* reject - stays ``blocked`` with a terminal rejection annotation
"""

from __future__ import annotations

import logging
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import ErrorCode, OpResult
from .intents import normalize_intent
from .lifecycle import MAX_REASON_CHARS, task_to_dict
from .meta import ClosureRecord, RetryApproval, ReviewRejection, TaskMeta, now_iso
from .models import Task, new_id

logger = logging.getLogger(__name__)

RETRY_OVERRIDE_INTENT = "HUMAN_REVIEW_RETRY"


class ReviewDecision(StrEnum):
    RETRY = "retry"
    CLOSE = "close"
    REJECT = "reject"


def review_summary(task: Task) -> dict:
    meta = TaskMeta.of(task.metadata_)
    return {
        "task_id": task.id,
        "status": task.status,
        "title": task.title,
        "stop_loss": meta.stop_loss.model_dump() if meta.stop_loss else None,
        "stop_loss_after_retry": (
            meta.stop_loss_after_retry.model_dump() if meta.stop_loss_after_retry else None
        ),
        "policy_gates": [g.model_dump() for g in meta.policy_gates],
        "retry_approved": meta.retry_approved,
        "rejected": meta.review_rejection is not None,
    }


async def review_task(
    session: AsyncSession,
    task_id: str,
    decision: ReviewDecision | str,
    *,
    reason: str,
    reviewer: str,
    artifact_id: str | None = None,
    dry_run: bool = False,
) -> OpResult:
    """Apply one human review decision to a blocked task."""
    try:
        decision = ReviewDecision(decision)
    except ValueError:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT, f"decision must be one of {[d.value for d in ReviewDecision]}"
        )
    reason = (reason or "").strip()
    if not reason or len(reason) > MAX_REASON_CHARS:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT,
            f"reason is required and must be at most {MAX_REASON_CHARS} characters",
            task_id=task_id,
        )
    if not reviewer or not reviewer.strip():
        return OpResult.failure(ErrorCode.INVALID_ARGUMENT, "reviewer is required", task_id=task_id)

    task = await db.get_task(session, task_id)
    if task is None:
        return OpResult.failure(ErrorCode.TASK_NOT_FOUND, task_id=task_id)

    # Re-applied decisions are reported before any status guard.
    meta = TaskMeta.of(task.metadata_)
    if decision == ReviewDecision.CLOSE and task.status == "done" and meta.closure:
        return OpResult.failure(ErrorCode.ALREADY_CLOSED, "task is already closed", task_id=task.id)
    if decision == ReviewDecision.RETRY:
        if meta.retry_approved:
            return OpResult.failure(
                ErrorCode.ALREADY_APPROVED_FOR_RETRY, "retry already approved", task_id=task.id
            )
        if meta.review_rejection:
            return OpResult.failure(
                ErrorCode.ALREADY_REJECTED, "rejected tasks cannot be retried", task_id=task.id
            )
    elif decision == ReviewDecision.REJECT and meta.review_rejection:
        return OpResult.failure(ErrorCode.ALREADY_REJECTED, "task already rejected", task_id=task.id)

    if task.status != "blocked" or not (meta.stop_loss_triggered or meta.policy_gate_triggered):
        return OpResult.failure(
            ErrorCode.NOT_REVIEWABLE,
            "human review requires a blocked task with a stop-loss or policy-gate record",
            task_id=task.id,
            status=task.status,
        )
    if artifact_id and decision != ReviewDecision.CLOSE:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT, "an artifact can only be attached on close", task_id=task.id
        )
    if artifact_id and await db.get_artifact(session, artifact_id) is None:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT, f"artifact {artifact_id} not found", task_id=task.id
        )

    if dry_run:
        return OpResult.success(
            task_id=task.id, dry_run=True, decision=decision.value, review=review_summary(task)
        )

    match decision:
        case ReviewDecision.RETRY:
            return await _retry(session, task, meta, reason, reviewer)
        case ReviewDecision.CLOSE:
            return await _close(session, task, meta, reason, reviewer, artifact_id)
        case _:
            return await _reject(session, task, meta, reason, reviewer)


async def _retry(
    session: AsyncSession, task: Task, meta: TaskMeta, reason: str, reviewer: str
) -> OpResult:
    audit_session = await db.audit_session_id(session, task)
    decision_id = new_id()
    meta.retry_approval = RetryApproval(
        reason=reason, approved_by=reviewer, approved_at=now_iso(), decision_id=decision_id
    )
    if not await db.transition_task(
        session, task, from_status="blocked", to_status="todo", metadata=meta.dump()
    ):
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED, "task status changed concurrently", task_id=task.id
        )
    decision = await db.add_decision(
        session,
        audit_session,
        decision_type="approve",
        subject=f"Override governance gate: retry task {task.id}",
        options={"intent": RETRY_OVERRIDE_INTENT, "task_id": task.id},
        selected_option="override_approved",
        rationale=reason,
        approved_by=reviewer,
        decision_id=decision_id,
    )
    await db.log_action(
        session,
        audit_session,
        actor=reviewer,
        type="approve_override",
        reason=reason,
        input_ref=task.id,
        output_ref=decision.id,
    )
    action = await db.log_action(
        session,
        audit_session,
        actor=reviewer,
        type="human_review_retry",
        reason=reason,
        input_ref=task.id,
        output_ref=decision.id,
        metadata={"before_status": "blocked", "after_status": "todo"},
    )
    logger.info("Task %s approved for retry by %s", task.id, reviewer)
    return OpResult.success(
        task_id=task.id,
        decision="retry",
        decision_id=decision.id,
        action_id=action.id,
        task=task_to_dict(task),
    )


async def _close(
    session: AsyncSession,
    task: Task,
    meta: TaskMeta,
    reason: str,
    reviewer: str,
    artifact_id: str | None,
) -> OpResult:
    audit_session = await db.audit_session_id(session, task)
    meta.closure = ClosureRecord(
        reason=reason,
        closed_by=reviewer,
        closed_at=now_iso(),
        artifact_id=artifact_id,
        session_id=task.session_id,
        via="human_review",
    )
    if not await db.transition_task(
        session, task, from_status="blocked", to_status="done", metadata=meta.dump()
    ):
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED, "task status changed concurrently", task_id=task.id
        )
    decision = await db.add_decision(
        session,
        audit_session,
        decision_type="approve",
        subject=f"Close blocked task {task.id}",
        options={"task_id": task.id, "choices": [d.value for d in ReviewDecision]},
        selected_option="close",
        rationale=reason,
        approved_by=reviewer,
    )
    action = await db.log_action(
        session,
        audit_session,
        actor=reviewer,
        type="human_review_close",
        reason=reason,
        input_ref=task.id,
        output_ref=decision.id,
        metadata={"before_status": "blocked", "after_status": "done", "artifact_id": artifact_id},
    )
    return OpResult.success(
        task_id=task.id,
        decision="close",
        decision_id=decision.id,
        action_id=action.id,
        task=task_to_dict(task),
    )


async def _reject(
    session: AsyncSession, task: Task, meta: TaskMeta, reason: str, reviewer: str
) -> OpResult:
    audit_session = await db.audit_session_id(session, task)
    meta.review_rejection = ReviewRejection(
        reason=reason, rejected_by=reviewer, rejected_at=now_iso()
    )
    if not await db.transition_task(
        session, task, from_status="blocked", to_status="blocked", metadata=meta.dump()
    ):
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED, "task status changed concurrently", task_id=task.id
        )
    decision = await db.add_decision(
        session,
        audit_session,
        decision_type="deny",
        subject=f"Reject blocked task {task.id}",
        options={"task_id": task.id, "choices": [d.value for d in ReviewDecision]},
        selected_option="reject",
        rationale=reason,
        approved_by=reviewer,
    )
    action = await db.log_action(
        session,
        audit_session,
        actor=reviewer,
        type="human_review_reject",
        status="blocked",
        reason=reason,
        input_ref=task.id,
        output_ref=decision.id,
    )
    return OpResult.success(
        task_id=task.id,
        decision="reject",
        decision_id=decision.id,
        action_id=action.id,
        task=task_to_dict(task),
    )



async def approve_override(
    session: AsyncSession,
    session_id: str,
    intent: str,
    *,
    reason: str,
    approver: str,
) -> OpResult:
    """Record a human override so a governance-flagged intent may be dispatched in this session."""
    normalized = normalize_intent(intent)
    if normalized is None:
        return OpResult.failure(ErrorCode.INVALID_ARGUMENT, f"unknown intent '{intent}'")
    reason = (reason or "").strip()
    if not reason or len(reason) > MAX_REASON_CHARS:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT,
            f"reason is required and must be at most {MAX_REASON_CHARS} characters",
        )
    if await db.get_work_session(session, session_id) is None:
        return OpResult.failure(ErrorCode.SESSION_NOT_FOUND, session_id=session_id)

    decision = await db.add_decision(
        session,
        session_id,
        decision_type="approve",
        subject=f"Override governance gate for {normalized.value}",
        options={"intent": normalized.value},
        selected_option="override_approved",
        rationale=reason,
        approved_by=approver,
    )
    action = await db.log_action(
        session,
        session_id,
        actor=approver,
        type="approve_override",
        reason=reason,
        output_ref=decision.id,
        metadata={"intent": normalized.value},
    )
    return OpResult.success(
        session_id=session_id,
        intent=normalized.value,
        decision_id=decision.id,
        action_id=action.id,
    )
