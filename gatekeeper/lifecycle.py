"""
Task lifecycle: atomic queue transitions with their audit rows.

    todo --(pop)--> doing --(close)--> done
    doing --(stop-loss)--> blocked          (see stop_loss.py)
    blocked --(human review)--> todo | done  (see review.py)

Every transition is a conditional UPDATE on the current status, written in
the same transaction as its audit action(s).
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import ErrorCode, OpResult
from .meta import ClosureRecord, PolicyGateRecord, PopRecord, TaskMeta, now_iso
from .models import Task, utcnow
from .policy import AutonomyVerdict, PolicyRepository
from .stop_loss import check_threshold

logger = logging.getLogger(__name__)

MAX_REASON_CHARS = 240
MAX_OWNER_CHARS = 40
TASK_STATUSES = ("todo", "doing", "done", "blocked")


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "session_id": task.session_id,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "due_at": task.due_at.isoformat() if task.due_at else None,
        "owner_agent": task.owner_agent,
        "status": task.status,
        "title": task.title,
        "details": task.details,
        "dependencies": task.dependencies or [],
        "metadata": task.metadata_ or {},
    }


def _check_reason(reason: str | None, task_id: str | None = None) -> OpResult | None:
    if not reason or not reason.strip():
        return OpResult.failure(ErrorCode.INVALID_ARGUMENT, "reason is required", task_id=task_id)
    if len(reason.strip()) > MAX_REASON_CHARS:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT,
            f"reason must be at most {MAX_REASON_CHARS} characters",
            task_id=task_id,
        )
    return None


def _check_owner(owner: str, task_id: str | None = None) -> OpResult | None:
    if not owner or len(owner) > MAX_OWNER_CHARS:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT,
            f"owner must be 1..{MAX_OWNER_CHARS} characters",
            task_id=task_id,
        )
    return None


# =============================================================================
# Read operations
# =============================================================================


async def get_task(session: AsyncSession, task_id: str) -> OpResult:
    task = await db.get_task(session, task_id)
    if task is None:
        return OpResult.failure(ErrorCode.TASK_NOT_FOUND, task_id=task_id)
    return OpResult.success(task_id=task.id, task=task_to_dict(task))


async def list_tasks(
    session: AsyncSession,
    *,
    status: str | None = None,
    session_id: str | None = None,
    owner: str | None = None,
    exclude_stub: bool = False,
    limit: int = 50,
) -> OpResult:
    if status and status not in TASK_STATUSES:
        return OpResult.failure(ErrorCode.INVALID_ARGUMENT, f"unknown status '{status}'")
    tasks = await db.list_tasks(
        session,
        status=status,
        session_id=session_id,
        owner=owner,
        exclude_stub=exclude_stub,
        limit=limit,
    )
    return OpResult.success(count=len(tasks), tasks=[task_to_dict(t) for t in tasks])


async def oldest_task(
    session: AsyncSession,
    *,
    session_id: str | None = None,
    owner: str | None = None,
    exclude_stub: bool = False,
) -> OpResult:
    task = await db.oldest_task(
        session, session_id=session_id, owner=owner, exclude_stub=exclude_stub
    )
    return OpResult.success(
        task_id=task.id if task else None, task=task_to_dict(task) if task else None
    )


# =============================================================================
# Enqueue
# =============================================================================


async def enqueue_task(
    session: AsyncSession,
    *,
    title: str,
    details: str | None = None,
    intent: str | None = None,
    session_id: str | None = None,
    owner_agent: str | None = None,
    source: str = "live",
    actor: str = "cos",
    extra_meta: dict[str, Any] | None = None,
) -> OpResult:
    """Create a ``todo`` task and record its creation."""
    if not title or not title.strip():
        return OpResult.failure(ErrorCode.INVALID_ARGUMENT, "title is required")
    if session_id:
        await db.ensure_work_session(session, session_id)
    meta = TaskMeta(intent=intent.strip().upper() if intent else None, source=source)
    task = await db.create_task(
        session,
        title=title.strip(),
        details=details,
        session_id=session_id,
        owner_agent=owner_agent,
        metadata={**(extra_meta or {}), **meta.dump()},
    )
    await db.log_action(
        session,
        await db.audit_session_id(session, task),
        actor=actor,
        type="task_create",
        input_ref=task.id,
        reason=task.title[:MAX_REASON_CHARS],
        metadata={"intent": meta.intent, "source": source},
    )
    return OpResult.success(task_id=task.id, task=task_to_dict(task))


# =============================================================================
# Autonomy policy gate
# =============================================================================


async def apply_policy_gate(
    session: AsyncSession,
    task: Task,
    verdict: AutonomyVerdict,
    *,
    owner: str = "cos",
) -> OpResult:
    """Block a ``todo`` task because the autonomy gate refused it."""
    if err := _check_owner(owner, task.id):
        return err
    meta = TaskMeta.of(task.metadata_)
    if task.status == "blocked" and meta.policy_gate_triggered:
        return OpResult.success(task_id=task.id, idempotent=True, status=task.status)
    if task.status != "todo":
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED,
            f"policy gate applies to 'todo' tasks, task is '{task.status}'",
            task_id=task.id,
        )

    reason = verdict.reason.value
    if verdict.detail:
        reason = f"{reason}: {verdict.detail}"[:MAX_REASON_CHARS]
    meta.hil_required = True
    meta.policy_gates.append(
        PolicyGateRecord(
            reason=reason,
            policy_version=verdict.policy_version,
            intent=verdict.intent,
            phrase=verdict.phrase,
            owner=owner,
            gated_at=now_iso(),
        )
    )
    if not await db.transition_task(
        session, task, from_status="todo", to_status="blocked", metadata=meta.dump()
    ):
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED, "task status changed concurrently", task_id=task.id
        )
    action = await db.log_action(
        session,
        await db.audit_session_id(session, task),
        actor=owner,
        type="policy_gate",
        status="blocked",
        reason=reason,
        input_ref=task.id,
        metadata=verdict.to_dict(),
    )
    logger.warning("Task %s gated by autonomy policy: %s", task.id, reason)
    return OpResult.failure(
        ErrorCode.POLICY_GATED,
        reason,
        task_id=task.id,
        human_review_required=True,
        verdict=verdict.to_dict(),
        action_id=action.id,
        status="blocked",
    )


async def policy_gate_check(
    session: AsyncSession,
    policy: PolicyRepository,
    task_id: str,
    *,
    owner: str = "cos",
    dry_run: bool = False,
) -> OpResult:
    """Evaluate the autonomy gate for one task, blocking it on a hit unless ``dry_run``."""
    task = await db.get_task(session, task_id)
    if task is None:
        return OpResult.failure(ErrorCode.TASK_NOT_FOUND, task_id=task_id)
    meta = TaskMeta.of(task.metadata_)
    verdict = policy.evaluate(meta.intent, _task_text(task))
    if verdict.allowed:
        return OpResult.success(task_id=task.id, verdict=verdict.to_dict())
    if dry_run:
        return OpResult.failure(
            ErrorCode.POLICY_GATED,
            verdict.reason.value,
            task_id=task.id,
            human_review_required=True,
            verdict=verdict.to_dict(),
            dry_run=True,
        )
    return await apply_policy_gate(session, task, verdict, owner=owner)


def _task_text(task: Task) -> str:
    return f"{task.title or ''}\n{task.details or ''}"


# =============================================================================
# Pop
# =============================================================================


async def pop_next_task(
    session: AsyncSession,
    policy: PolicyRepository,
    *,
    session_id: str | None = None,
    owner: str | None = None,
    exclude_stub: bool = False,
    actor: str = "cos",
    run_id: str | None = None,
) -> OpResult:
    """Claim the oldest eligible ``todo`` task.

    The stop-loss threshold and the autonomy gate are evaluated on the
    candidate first; a refusal returns a gate outcome and the pop is not
    attempted. Losing a race to another caller returns ``task=None``.
    """
    candidate = await db.oldest_task(
        session, session_id=session_id, owner=owner, exclude_stub=exclude_stub
    )
    if candidate is None:
        return OpResult.success(task=None)

    meta = TaskMeta.of(candidate.metadata_)
    audit_session = await db.audit_session_id(session, candidate)

    threshold = check_threshold(meta)
    if not threshold.allowed:
        await db.log_action(
            session,
            audit_session,
            actor=actor,
            type="stop_loss_gate",
            status="blocked",
            reason=threshold.reason,
            input_ref=candidate.id,
            output_ref=run_id,
        )
        return OpResult.failure(
            ErrorCode.STOP_LOSS_ALREADY_TRIGGERED,
            "task already stop-lossed; human review required",
            task_id=candidate.id,
            human_review_required=True,
            next_action="human_review_required",
        )

    verdict = policy.evaluate(meta.intent, _task_text(candidate))
    if not verdict.allowed:
        return await apply_policy_gate(session, candidate, verdict, owner=actor)

    run_id = run_id or str(uuid4())
    before = task_to_dict(candidate)
    meta.run_id = run_id
    meta.pop = PopRecord(popped_at=now_iso(), popped_by=actor, run_id=run_id)
    claimed = await db.transition_task(
        session,
        candidate,
        from_status="todo",
        to_status="doing",
        metadata=meta.dump(),
        owner_agent=owner or candidate.owner_agent or actor,
    )
    if not claimed:
        logger.info("Task %s was claimed by another caller", candidate.id)
        return OpResult.success(task=None, raced=True)

    after = task_to_dict(candidate)
    await db.log_action(
        session,
        audit_session,
        actor=actor,
        type="task_update",
        input_ref=candidate.id,
        output_ref=run_id,
        reason="todo -> doing",
        metadata={"before": {"status": before["status"]}, "after": {"status": after["status"]}},
    )
    await db.log_action(
        session,
        audit_session,
        actor=actor,
        type="task_next",
        input_ref=candidate.id,
        output_ref=run_id,
        metadata={
            "session_id": session_id,
            "owner": owner,
            "exclude_stub": exclude_stub,
            "threshold": threshold.reason,
            "policy": verdict.to_dict(),
        },
    )
    return OpResult.success(task_id=candidate.id, task=after, run_id=run_id)


# =============================================================================
# Close
# =============================================================================


async def close_task(
    session: AsyncSession,
    task_id: str,
    *,
    reason: str,
    artifact_id: str | None = None,
    closed_by: str = "cos",
) -> OpResult:
    """Close a ``doing`` task. Any other status is a guard failure."""
    if err := _check_reason(reason, task_id) or _check_owner(closed_by, task_id):
        return err

    task = await db.get_task(session, task_id)
    if task is None:
        return OpResult.failure(ErrorCode.TASK_NOT_FOUND, task_id=task_id)
    if task.status != "doing":
        hint = {
            "todo": "pop the task before closing it",
            "done": "task is already closed",
            "blocked": "blocked tasks are resolved through human review",
        }.get(task.status)
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED,
            f"close requires status 'doing', task is '{task.status}'",
            task_id=task.id,
            status=task.status,
            hint=hint,
        )
    if artifact_id and await db.get_artifact(session, artifact_id) is None:
        return OpResult.failure(
            ErrorCode.INVALID_ARGUMENT, f"artifact {artifact_id} not found", task_id=task.id
        )

    meta = TaskMeta.of(task.metadata_)
    meta.closure = ClosureRecord(
        reason=reason.strip(),
        closed_by=closed_by,
        closed_at=now_iso(),
        artifact_id=artifact_id,
        session_id=task.session_id,
    )
    if not await db.transition_task(
        session, task, from_status="doing", to_status="done", metadata=meta.dump()
    ):
        return OpResult.failure(
            ErrorCode.STATUS_GUARD_FAILED, "task status changed concurrently", task_id=task.id
        )
    action = await db.log_action(
        session,
        await db.audit_session_id(session, task),
        actor=closed_by,
        type="task_close",
        reason=reason.strip(),
        input_ref=task.id,
        output_ref=artifact_id,
        metadata={"before_status": "doing", "after_status": "done"},
    )
    return OpResult.success(task_id=task.id, task=task_to_dict(task), action_id=action.id)


# =============================================================================
# Sessions
# =============================================================================


async def close_session(
    session: AsyncSession, session_id: str, *, summary: str | None = None, actor: str = "cos"
) -> OpResult:
    work_session = await db.get_work_session(session, session_id)
    if work_session is None:
        return OpResult.failure(ErrorCode.SESSION_NOT_FOUND, session_id=session_id)
    if work_session.status == "closed":
        return OpResult.failure(
            ErrorCode.SESSION_CLOSED, "session is already closed", session_id=session_id
        )
    work_session.status = "closed"
    work_session.ended_at = utcnow()
    work_session.summary = summary
    await session.flush()
    await db.log_action(session, session_id, actor=actor, type="session_close", reason=summary)
    return OpResult.success(session_id=session_id, status="closed")
