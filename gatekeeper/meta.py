"""Typed task metadata.

Task metadata is persisted as a JSON document. Each lifecycle stage owns
one optional sub-record; a stage only ever adds its own record and never
rewrites another stage's record.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


class _Record(BaseModel):
    model_config = ConfigDict(extra="allow")


class PopRecord(_Record):
    popped_at: str
    popped_by: str
    run_id: str | None = None


class ClosureRecord(_Record):
    reason: str
    closed_by: str
    closed_at: str
    artifact_id: str | None = None
    session_id: str | None = None
    via: str = "lifecycle"  # 'lifecycle' | 'human_review'


class StopLossRecord(_Record):
    reason: str
    step: str
    owner: str
    failure_type: str | None = None
    run_id: str | None = None
    triggered_at: str


class PolicyGateRecord(_Record):
    reason: str
    policy_version: str | None = None
    intent: str | None = None
    phrase: str | None = None
    owner: str
    gated_at: str


class RetryApproval(_Record):
    reason: str
    approved_by: str
    approved_at: str
    decision_id: str


class ReviewRejection(_Record):
    reason: str
    rejected_by: str
    rejected_at: str


class TaskMeta(BaseModel):
    """Structured view over a task's metadata document."""

    model_config = ConfigDict(extra="allow")

    intent: str | None = None
    source: str | None = None  # 'stub' | 'live'
    run_id: str | None = None
    hil_required: bool = False
    updated_at: str | None = None

    pop: PopRecord | None = None
    closure: ClosureRecord | None = None
    stop_loss: StopLossRecord | None = None
    stop_loss_after_retry: StopLossRecord | None = None
    policy_gates: list[PolicyGateRecord] = Field(default_factory=list)
    retry_approval: RetryApproval | None = None
    review_rejection: ReviewRejection | None = None

    @classmethod
    def of(cls, raw: dict[str, Any] | None) -> TaskMeta:
        return cls.model_validate(raw or {})

    def dump(self) -> dict[str, Any]:
        self.updated_at = now_iso()
        return self.model_dump(mode="json", exclude_none=True)

    @property
    def is_stub(self) -> bool:
        return self.source == "stub"

    @property
    def stop_loss_triggered(self) -> bool:
        return self.stop_loss is not None

    @property
    def policy_gate_triggered(self) -> bool:
        return bool(self.policy_gates)

    @property
    def retry_approved(self) -> bool:
        return self.retry_approval is not None
