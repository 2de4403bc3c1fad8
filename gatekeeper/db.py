"""Async ledger store connection and operations."""

from __future__ import annotations

import hashlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import event, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .errors import (
    LedgerStoreError,
    SchemaNotInitializedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    Action,
    Agent,
    Artifact,
    Base,
    Decision,
    Message,
    RoutingRule,
    Task,
    WorkSession,
    new_id,
    utcnow,
)


def sha256_hex(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Ledger:
    """Engine + session factory for one ledger database.

    SQLite connections start every transaction with ``BEGIN IMMEDIATE`` so
    that writers are serialized by the database lock and a transaction never
    has to upgrade a read lock mid-flight.
    """

    def __init__(self, database_url: str, *, busy_timeout: float = 30.0, echo: bool = False) -> None:
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")
        connect_args: dict[str, Any] = {"timeout": busy_timeout} if self.is_sqlite else {}
        self.engine: AsyncEngine = create_async_engine(
            database_url, echo=echo, pool_pre_ping=True, connect_args=connect_args
        )
        if self.is_sqlite:
            _configure_sqlite(self.engine)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Transaction scope: commit on success, roll back on any error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError):
                    if is_schema_missing_error(exc):
                        raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
                    raise LedgerStoreError(f"Ledger store failure: {exc}") from exc
                raise


def _configure_sqlite(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Let SQLAlchemy emit BEGIN itself instead of the driver's implicit one.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# =============================================================================
# Session Operations
# =============================================================================


async def get_work_session(session: AsyncSession, session_id: str) -> WorkSession | None:
    return await session.get(WorkSession, session_id)


async def ensure_work_session(
    session: AsyncSession,
    session_id: str,
    *,
    initiator: str = "system",
    mode: str = "on_demand",
    metadata: dict[str, Any] | None = None,
) -> WorkSession:
    """Return the session, creating it (status open) if missing."""
    existing = await session.get(WorkSession, session_id)
    if existing:
        return existing
    work_session = WorkSession(
        id=session_id,
        initiator=initiator,
        mode=mode,
        status="open",
        metadata_=metadata or {},
    )
    session.add(work_session)
    await session.flush()
    return work_session


async def flag_work_session(session: AsyncSession, work_session: WorkSession, reason: str) -> None:
    """Mark a session for operator review."""
    meta = dict(work_session.metadata_ or {})
    flags = list(meta.get("review_flags", []))
    flags.append({"reason": reason, "at": utcnow().isoformat()})
    meta["review_required"] = True
    meta["review_flags"] = flags
    work_session.metadata_ = meta
    await session.flush()


# =============================================================================
# Audit Operations
# =============================================================================


async def add_message(
    session: AsyncSession,
    session_id: str,
    role: str,
    content: str,
    *,
    agent_name: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Message:
    message = Message(
        session_id=session_id,
        role=role,
        agent_name=agent_name,
        content=content,
        content_sha256=sha256_hex(content),
        metadata_=metadata or {},
    )
    session.add(message)
    await session.flush()
    return message


async def log_action(
    session: AsyncSession,
    session_id: str,
    *,
    actor: str,
    type: str,
    status: str = "ok",
    reason: str | None = None,
    input_ref: str | None = None,
    output_ref: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Action:
    """Append an audit action row."""
    action = Action(
        session_id=session_id,
        actor=actor,
        type=type,
        status=status,
        reason=reason,
        input_ref=input_ref,
        output_ref=output_ref,
        metadata_=metadata or {},
    )
    session.add(action)
    await session.flush()
    return action


async def add_decision(
    session: AsyncSession,
    session_id: str,
    *,
    decision_type: str,
    subject: str,
    options: dict[str, Any] | None = None,
    selected_option: str | None = None,
    rationale: str | None = None,
    approved_by: str | None = None,
    metadata: dict[str, Any] | None = None,
    decision_id: str | None = None,
) -> Decision:
    decision = Decision(
        id=decision_id or new_id(),
        session_id=session_id,
        decision_type=decision_type,
        subject=subject,
        options=options or {},
        selected_option=selected_option,
        rationale=rationale,
        approved_by=approved_by,
        metadata_=metadata or {},
    )
    session.add(decision)
    await session.flush()
    return decision


async def has_approved_override(session: AsyncSession, session_id: str, intent: str) -> bool:
    """True if a human approved an override for this session + intent."""
    result = await session.execute(
        select(Decision).where(
            Decision.session_id == session_id,
            Decision.decision_type == "approve",
            Decision.selected_option == "override_approved",
        )
    )
    return any(d.options.get("intent") == intent for d in result.scalars().all())


async def list_decisions(
    session: AsyncSession, session_id: str | None = None, limit: int = 20
) -> list[Decision]:
    query = select(Decision).order_by(Decision.ts.desc()).limit(limit)
    if session_id:
        query = query.where(Decision.session_id == session_id)
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_actions(
    session: AsyncSession,
    *,
    session_id: str | None = None,
    action_type: str | None = None,
    ref: str | None = None,
) -> list[Action]:
    query = select(Action).order_by(Action.ts)
    if session_id:
        query = query.where(Action.session_id == session_id)
    if action_type:
        query = query.where(Action.type == action_type)
    if ref:
        query = query.where((Action.input_ref == ref) | (Action.output_ref == ref))
    result = await session.execute(query)
    return list(result.scalars().all())


async def review_stats(session: AsyncSession) -> dict[str, int]:
    """Count human interventions and their triggers by action type."""
    types = [
        "stop_loss",
        "policy_gate",
        "stop_loss_gate",
        "human_review_retry",
        "human_review_close",
        "human_review_reject",
    ]
    rows = (
        await session.execute(
            select(Action.type, func.count(Action.id))
            .where(Action.type.in_(types))
            .group_by(Action.type)
        )
    ).all()
    counts = {t: 0 for t in types}
    for action_type, count in rows:
        counts[action_type] = int(count)
    return counts


# =============================================================================
# Task Operations
# =============================================================================


async def create_task(
    session: AsyncSession,
    *,
    title: str,
    session_id: str | None = None,
    details: str | None = None,
    owner_agent: str | None = None,
    status: str = "todo",
    metadata: dict[str, Any] | None = None,
    dependencies: list[str] | None = None,
    created_at: datetime | None = None,
    due_at: datetime | None = None,
) -> Task:
    task = Task(
        session_id=session_id,
        title=title,
        details=details,
        owner_agent=owner_agent,
        status=status,
        metadata_=metadata or {},
        dependencies=dependencies or [],
        due_at=due_at,
    )
    if created_at is not None:
        task.created_at = created_at
    session.add(task)
    await session.flush()
    return task


async def get_task(session: AsyncSession, task_id: str) -> Task | None:
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


def _task_filters(
    query: Any,
    *,
    status: str | None,
    session_id: str | None,
    owner: str | None,
    exclude_stub: bool,
) -> Any:
    if status:
        query = query.where(Task.status == status)
    if session_id:
        query = query.where(Task.session_id == session_id)
    if owner:
        query = query.where(Task.owner_agent == owner)
    if exclude_stub:
        source = func.coalesce(Task.metadata_["source"].as_string(), "")
        query = query.where(source != "stub")
    return query


async def list_tasks(
    session: AsyncSession,
    *,
    status: str | None = None,
    session_id: str | None = None,
    owner: str | None = None,
    exclude_stub: bool = False,
    limit: int = 50,
) -> list[Task]:
    query = select(Task).order_by(Task.created_at.desc()).limit(limit)
    query = _task_filters(
        query, status=status, session_id=session_id, owner=owner, exclude_stub=exclude_stub
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def oldest_task(
    session: AsyncSession,
    *,
    status: str = "todo",
    session_id: str | None = None,
    owner: str | None = None,
    exclude_stub: bool = False,
) -> Task | None:
    """Oldest task by creation time, or None."""
    query = select(Task).order_by(Task.created_at.asc(), Task.id.asc()).limit(1)
    query = _task_filters(
        query, status=status, session_id=session_id, owner=owner, exclude_stub=exclude_stub
    )
    result = await session.execute(query)
    return result.scalar_one_or_none()


OPS_SESSION_ID = "ops"


async def audit_session_id(session: AsyncSession, task: Task) -> str:
    """Session that receives audit rows for a task (detached tasks use the ops session)."""
    if task.session_id:
        return task.session_id
    ops = await ensure_work_session(session, OPS_SESSION_ID, initiator="system")
    return ops.id


async def transition_task(
    session: AsyncSession,
    task: Task,
    *,
    from_status: str,
    to_status: str,
    metadata: dict[str, Any],
    owner_agent: str | None = None,
) -> bool:
    """Conditionally move a task between statuses.

    Returns False when the row no longer has ``from_status`` (another caller
    got there first); nothing is written in that case.
    """
    values: dict[Any, Any] = {Task.status: to_status, Task.metadata_: metadata}
    if owner_agent is not None:
        values[Task.owner_agent] = owner_agent
    result = await session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status == from_status)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await session.refresh(task)
    return True


# =============================================================================
# Artifact Operations
# =============================================================================


async def add_artifact(
    session: AsyncSession,
    session_id: str,
    *,
    type: str,
    content: str,
    title: str | None = None,
    classification: str = "internal",
    tags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
) -> Artifact:
    artifact = Artifact(
        session_id=session_id,
        type=type,
        title=title,
        content=content,
        content_sha256=sha256_hex(content),
        classification=classification,
        tags=tags or [],
        metadata_=metadata or {},
    )
    session.add(artifact)
    await session.flush()
    return artifact


async def get_artifact(session: AsyncSession, artifact_id: str) -> Artifact | None:
    return await session.get(Artifact, artifact_id)


async def latest_artifact(session: AsyncSession, session_id: str) -> Artifact | None:
    result = await session.execute(
        select(Artifact)
        .where(Artifact.session_id == session_id)
        .order_by(Artifact.ts.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_artifacts(session: AsyncSession, session_id: str, limit: int = 20) -> list[Artifact]:
    result = await session.execute(
        select(Artifact)
        .where(Artifact.session_id == session_id)
        .order_by(Artifact.ts.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# Reference Data
# =============================================================================


async def upsert_agent(session: AsyncSession, **fields: Any) -> Agent:
    agent = await session.get(Agent, fields["name"])
    if agent is None:
        agent = Agent(**fields)
        session.add(agent)
    else:
        for key, value in fields.items():
            setattr(agent, key, value)
    await session.flush()
    return agent


async def upsert_routing_rule(session: AsyncSession, **fields: Any) -> RoutingRule:
    result = await session.execute(select(RoutingRule).where(RoutingRule.intent == fields["intent"]))
    rule = result.scalar_one_or_none()
    if rule is None:
        rule = RoutingRule(**fields)
        session.add(rule)
    else:
        for key, value in fields.items():
            setattr(rule, key, value)
    await session.flush()
    return rule
