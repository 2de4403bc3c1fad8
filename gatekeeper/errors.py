"""Error types, result codes and helpers for the gatekeeper ledger."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import click


class ErrorCategory(StrEnum):
    VALIDATION = "validation"
    GATE = "gate"
    GUARD = "guard"
    STORE = "store"
    IDEMPOTENCY = "idempotency"


class ErrorCode(StrEnum):
    # Validation
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    ROUTER_OUTPUT_VERSION_MISMATCH = "ROUTER_OUTPUT_VERSION_MISMATCH"
    ROUTING_RULE_MISSING = "ROUTING_RULE_MISSING"
    POLICY_VALIDATION_FAILED = "POLICY_VALIDATION_FAILED"
    # Gate outcomes
    GOVERNANCE_DENIED = "GOVERNANCE_DENIED"
    POLICY_GATED = "POLICY_GATED"
    STOP_LOSS_ALREADY_TRIGGERED = "STOP_LOSS_ALREADY_TRIGGERED"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    # Guards
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    STATUS_GUARD_FAILED = "STATUS_GUARD_FAILED"
    NOT_REVIEWABLE = "NOT_REVIEWABLE"
    SESSION_CLOSED = "SESSION_CLOSED"
    # Idempotency
    ALREADY_TRIGGERED = "ALREADY_TRIGGERED"
    ALREADY_APPROVED_FOR_RETRY = "ALREADY_APPROVED_FOR_RETRY"
    ALREADY_CLOSED = "ALREADY_CLOSED"
    ALREADY_REJECTED = "ALREADY_REJECTED"
    # Store
    STORE_FAILURE = "STORE_FAILURE"
    SCHEMA_NOT_INITIALIZED = "SCHEMA_NOT_INITIALIZED"


_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.VALIDATION_FAILED: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_ARGUMENT: ErrorCategory.VALIDATION,
    ErrorCode.ROUTER_OUTPUT_VERSION_MISMATCH: ErrorCategory.VALIDATION,
    ErrorCode.ROUTING_RULE_MISSING: ErrorCategory.VALIDATION,
    ErrorCode.POLICY_VALIDATION_FAILED: ErrorCategory.VALIDATION,
    ErrorCode.GOVERNANCE_DENIED: ErrorCategory.GATE,
    ErrorCode.POLICY_GATED: ErrorCategory.GATE,
    ErrorCode.STOP_LOSS_ALREADY_TRIGGERED: ErrorCategory.GATE,
    ErrorCode.DISPATCH_FAILED: ErrorCategory.GATE,
    ErrorCode.TASK_NOT_FOUND: ErrorCategory.GUARD,
    ErrorCode.SESSION_NOT_FOUND: ErrorCategory.GUARD,
    ErrorCode.STATUS_GUARD_FAILED: ErrorCategory.GUARD,
    ErrorCode.NOT_REVIEWABLE: ErrorCategory.GUARD,
    ErrorCode.SESSION_CLOSED: ErrorCategory.GUARD,
    ErrorCode.ALREADY_TRIGGERED: ErrorCategory.IDEMPOTENCY,
    ErrorCode.ALREADY_APPROVED_FOR_RETRY: ErrorCategory.IDEMPOTENCY,
    ErrorCode.ALREADY_CLOSED: ErrorCategory.IDEMPOTENCY,
    ErrorCode.ALREADY_REJECTED: ErrorCategory.IDEMPOTENCY,
    ErrorCode.STORE_FAILURE: ErrorCategory.STORE,
    ErrorCode.SCHEMA_NOT_INITIALIZED: ErrorCategory.STORE,
}


def category_of(code: ErrorCode) -> ErrorCategory:
    return _CATEGORIES[code]


@dataclass
class OpResult:
    """Structured outcome of a core operation.

    Gate hits, guard failures and idempotency violations are reported here
    instead of being raised, so callers always receive a reason code.
    """

    ok: bool
    error: ErrorCode | None = None
    detail: str | None = None
    human_review_required: bool = False
    task_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> ErrorCategory | None:
        return category_of(self.error) if self.error else None

    @classmethod
    def success(
        cls, task_id: str | None = None, *, human_review_required: bool = False, **data: Any
    ) -> OpResult:
        return cls(
            ok=True, task_id=task_id, human_review_required=human_review_required, data=data
        )

    @classmethod
    def failure(
        cls,
        error: ErrorCode,
        detail: str | None = None,
        *,
        task_id: str | None = None,
        human_review_required: bool = False,
        **data: Any,
    ) -> OpResult:
        return cls(
            ok=False,
            error=error,
            detail=detail,
            task_id=task_id,
            human_review_required=human_review_required,
            data=data,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok}
        if self.task_id:
            out["task_id"] = self.task_id
        if self.error:
            out["error"] = self.error.value
            out["category"] = self.category.value if self.category else None
            out["detail"] = self.detail
        if self.human_review_required:
            out["human_review_required"] = True
        out.update(self.data)
        return out


class LedgerStoreError(click.ClickException):
    """Raised when a read or write against the ledger store fails."""

    code = ErrorCode.STORE_FAILURE


class SchemaNotInitializedError(LedgerStoreError):
    """Raised when the database schema/migrations have not been applied."""

    code = ErrorCode.SCHEMA_NOT_INITIALIZED


def store_failure(exc: LedgerStoreError) -> OpResult:
    """Convert a store error into the structured result returned at operation boundaries."""
    return OpResult.failure(exc.code, exc.message)


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _PG_MISSING_RELATION_RE.search(str(e)) or _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    if missing_table_name(exc):
        return True
    for e in _unwrap_exception_chain(exc):
        if "undefinedtableerror" in str(e).lower():
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    lines: list[str] = [
        f"Ledger schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head` or `gatekeeper init-db`",
        "Or validate with: `gatekeeper schema-check`",
    ]
    return "\n".join(lines)
