"""Main CLI entry point for the gatekeeper ledger."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from . import __version__, db, lifecycle, review
from .config import settings
from .dispatch import Dispatcher
from .errors import ErrorCode, LedgerStoreError, OpResult, store_failure
from .models import Base
from .policy import PolicyRepository, validate_policy
from .providers import ChatProvider, build_provider
from .registry import Registry, RegistryError, bootstrap
from .router import Router, RouterOutputVersionError, parse_router_output
from .stop_loss import apply_stop_loss
from .triage import GovernanceTriage, TriageConfig

console = Console()
err_console = Console(stderr=True)


def _ledger() -> db.Ledger:
    return db.Ledger(settings.database_url, busy_timeout=settings.sqlite_busy_timeout)


def _policy() -> PolicyRepository:
    return PolicyRepository(settings.policy_path)


def _registry() -> Registry:
    try:
        return Registry.load(settings.registry_path)
    except RegistryError as e:
        raise click.ClickException(str(e)) from e


def _emit(result: OpResult) -> None:
    console.print_json(data=result.to_dict(), default=str)
    if not result.ok:
        raise SystemExit(1)


def _run(op: Callable[[AsyncSession], Awaitable[OpResult]]) -> None:
    """Run one operation in its own transaction and print the structured result."""

    async def runner() -> OpResult:
        ledger = _ledger()
        try:
            async with ledger.session() as session:
                return await op(session)
        except LedgerStoreError as e:
            return store_failure(e)
        finally:
            await ledger.dispose()

    _emit(asyncio.run(runner()))


def _provider() -> ChatProvider:
    return build_provider(
        settings.llm_mode,
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        max_tokens=settings.llm_max_tokens,
        timeout_seconds=settings.dispatch_timeout,
    )


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Governance-gated task routing and lifecycle ledger.

    Routes requests to agents, gates autonomous execution behind policy,
    and keeps an auditable trail of every decision.
    """
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=False)],
    )


# =============================================================================
# Store
# =============================================================================


@main.command(name="init-db")
def init_db() -> None:
    """Create ledger tables (development; use alembic in production)."""

    async def create() -> None:
        ledger = _ledger()
        try:
            await ledger.init_db()
        finally:
            await ledger.dispose()

    asyncio.run(create())
    console.print("[green]Ledger schema created[/green]")


@main.command(name="schema-check", help="Check ledger schema readiness for current code.")
def schema_check() -> None:
    async def check() -> list[str]:
        ledger = _ledger()
        try:
            async with ledger.engine.connect() as conn:
                existing = await conn.run_sync(lambda c: set(inspect(c).get_table_names()))
        finally:
            await ledger.dispose()
        return sorted(set(Base.metadata.tables) - existing)

    missing = asyncio.run(check())
    if missing:
        console.print(f"[red]Missing tables: {missing}[/red]")
        console.print("Run: `alembic upgrade head` or `gatekeeper init-db`")
        raise SystemExit(1)
    console.print("[green]Schema ready[/green]")


@main.command(name="bootstrap")
def bootstrap_cmd() -> None:
    """Load agents and routing rules from the registry into the ledger."""
    registry = _registry()

    async def op(session: AsyncSession) -> OpResult:
        return OpResult.success(**await bootstrap(session, registry))

    _run(op)


# =============================================================================
# Routing
# =============================================================================


@main.command()
@click.argument("request_file", type=click.File("r"))
@click.option("--dispatch", "do_dispatch", is_flag=True, help="Dispatch to the agent if approved")
def route(request_file: Any, do_dispatch: bool) -> None:
    """Route a JSON request (use '-' for stdin).

    REQUEST_FILE: JSON object with request_id, session_id, timestamp,
    initiator, goal_text, constraints and context.
    """
    try:
        payload = json.load(request_file)
    except json.JSONDecodeError as e:
        _emit(OpResult.failure(ErrorCode.VALIDATION_FAILED, f"request is not valid JSON: {e}"))
        return
    router = Router(_registry())

    async def run() -> OpResult:
        ledger = _ledger()
        try:
            async with ledger.session() as session:
                result = await router.route(session, payload)
            if not (do_dispatch and result.ok):
                return result
            provider = _provider()
            dispatcher = Dispatcher(
                ledger, router.registry, provider, timeout_seconds=settings.dispatch_timeout
            )
            try:
                routed = parse_router_output(result.data["router_output"])
                outcome = await dispatcher.dispatch(routed)
            finally:
                await provider.aclose()
            result.data["dispatch"] = outcome.to_dict()
            if not outcome.ok:
                return OpResult.failure(
                    ErrorCode.DISPATCH_FAILED, outcome.reason, human_review_required=True,
                    **result.data,
                )
            return result
        except LedgerStoreError as e:
            return store_failure(e)
        finally:
            await ledger.dispose()

    _emit(asyncio.run(run()))


@main.command(name="check-output")
@click.argument("output_file", type=click.File("r"))
def check_output(output_file: Any) -> None:
    """Verify a stored router output object (schema version must match)."""
    try:
        routed = parse_router_output(json.load(output_file))
    except RouterOutputVersionError as e:
        _emit(OpResult.failure(e.code, str(e)))
        return
    except ValueError as e:
        _emit(OpResult.failure(ErrorCode.VALIDATION_FAILED, str(e)))
        return
    _emit(OpResult.success(request_id=routed.request_id, intent=routed.intent.value))


@main.command()
@click.option("--session", "session_id", default=None, help="Only tasks in this session")
@click.option("--owner", default=None, help="Only tasks owned by this agent")
@click.option("--actor", default=None, help="Operator identity")
@click.option("--no-close", is_flag=True, help="Leave a successful task in 'doing'")
def triage(session_id: str | None, owner: str | None, actor: str | None, no_close: bool) -> None:
    """Run one governance triage cycle on the oldest eligible task."""
    registry = _registry()

    async def run() -> OpResult:
        ledger = _ledger()
        provider = _provider()
        try:
            dispatcher = Dispatcher(
                ledger, registry, provider, timeout_seconds=settings.dispatch_timeout
            )
            cycle = GovernanceTriage(ledger, _policy(), Router(registry), dispatcher)
            return await cycle.run_cycle(
                TriageConfig(
                    actor=actor or settings.default_actor,
                    session_id=session_id,
                    owner=owner,
                    close_on_success=not no_close,
                )
            )
        finally:
            await provider.aclose()
            await ledger.dispose()

    _emit(asyncio.run(run()))


# =============================================================================
# Tasks
# =============================================================================


@main.group()
def tasks() -> None:
    """Inspect and transition tasks."""


@tasks.command(name="add")
@click.argument("title")
@click.option("--details", default=None)
@click.option("--intent", default=None)
@click.option("--session", "session_id", default=None)
@click.option("--owner", default=None)
@click.option("--source", type=click.Choice(["live", "stub"]), default="live")
def tasks_add(
    title: str,
    details: str | None,
    intent: str | None,
    session_id: str | None,
    owner: str | None,
    source: str,
) -> None:
    """Queue a new todo task."""
    _run(
        lambda s: lifecycle.enqueue_task(
            s,
            title=title,
            details=details,
            intent=intent,
            session_id=session_id,
            owner_agent=owner,
            source=source,
            actor=settings.default_actor,
        )
    )


@tasks.command(name="next")
@click.option("--session", "session_id", default=None)
@click.option("--owner", default=None)
@click.option("--no-stub", is_flag=True, help="Skip placeholder tasks")
@click.option("--actor", default=None)
def tasks_next(session_id: str | None, owner: str | None, no_stub: bool, actor: str | None) -> None:
    """Pop the oldest eligible todo task (gated by policy and stop-loss)."""
    policy = _policy()
    _run(
        lambda s: lifecycle.pop_next_task(
            s,
            policy,
            session_id=session_id,
            owner=owner,
            exclude_stub=no_stub,
            actor=actor or settings.default_actor,
        )
    )


@tasks.command(name="get")
@click.argument("task_id")
def tasks_get(task_id: str) -> None:
    """Show one task."""
    _run(lambda s: lifecycle.get_task(s, task_id))


@tasks.command(name="list")
@click.option("--status", "status_filter", default=None, help="Filter by status")
@click.option("--session", "session_id", default=None)
@click.option("--owner", default=None)
@click.option("--no-stub", is_flag=True)
@click.option("--limit", default=50, help="Number of tasks to show")
@click.option("--table", "as_table", is_flag=True, help="Render a table instead of JSON")
def tasks_list(
    status_filter: str | None,
    session_id: str | None,
    owner: str | None,
    no_stub: bool,
    limit: int,
    as_table: bool,
) -> None:
    """List tasks, newest first."""

    async def op(session: AsyncSession) -> OpResult:
        return await lifecycle.list_tasks(
            session,
            status=status_filter,
            session_id=session_id,
            owner=owner,
            exclude_stub=no_stub,
            limit=limit,
        )

    if not as_table:
        _run(op)
        return

    async def fetch() -> OpResult:
        ledger = _ledger()
        try:
            async with ledger.session() as session:
                return await op(session)
        finally:
            await ledger.dispose()

    result = asyncio.run(fetch())
    if not result.ok:
        _emit(result)
    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Owner")
    table.add_column("Intent")
    table.add_column("Title")
    for task in result.data["tasks"]:
        table.add_row(
            task["id"],
            task["status"],
            task["owner_agent"] or "-",
            task["metadata"].get("intent") or "-",
            task["title"][:60],
        )
    console.print(table)


@tasks.command(name="oldest")
@click.option("--session", "session_id", default=None)
@click.option("--owner", default=None)
@click.option("--no-stub", is_flag=True)
def tasks_oldest(session_id: str | None, owner: str | None, no_stub: bool) -> None:
    """Peek at the oldest todo task without claiming it."""
    _run(
        lambda s: lifecycle.oldest_task(
            s, session_id=session_id, owner=owner, exclude_stub=no_stub
        )
    )


@tasks.command(name="close")
@click.argument("task_id")
@click.option("--reason", required=True)
@click.option("--artifact", "artifact_id", default=None)
@click.option("--owner", default=None)
def tasks_close(task_id: str, reason: str, artifact_id: str | None, owner: str | None) -> None:
    """Close a task that is currently 'doing'."""
    _run(
        lambda s: lifecycle.close_task(
            s,
            task_id,
            reason=reason,
            artifact_id=artifact_id,
            closed_by=owner or settings.default_actor,
        )
    )


@tasks.command(name="stop-loss")
@click.argument("task_id")
@click.option("--reason", required=True)
@click.option("--step", required=True, help="Where the failure happened")
@click.option("--failure-type", default=None)
@click.option("--run-id", default=None)
@click.option("--owner", default=None)
def tasks_stop_loss(
    task_id: str,
    reason: str,
    step: str,
    failure_type: str | None,
    run_id: str | None,
    owner: str | None,
) -> None:
    """Block a task after a failure and require human review."""
    _run(
        lambda s: apply_stop_loss(
            s,
            task_id,
            reason=reason,
            step=step,
            owner=owner or settings.default_actor,
            failure_type=failure_type,
            run_id=run_id,
        )
    )


@tasks.command(name="policy-gate")
@click.argument("task_id")
@click.option("--dry-run", is_flag=True, help="Evaluate without blocking the task")
@click.option("--owner", default=None)
def tasks_policy_gate(task_id: str, dry_run: bool, owner: str | None) -> None:
    """Evaluate the autonomy policy gate for a task."""
    policy = _policy()
    _run(
        lambda s: lifecycle.policy_gate_check(
            s, policy, task_id, owner=owner or settings.default_actor, dry_run=dry_run
        )
    )


@tasks.command(name="review")
@click.argument("task_id")
@click.argument("decision", type=click.Choice([d.value for d in review.ReviewDecision]))
@click.option("--reason", required=True)
@click.option("--reviewer", required=True)
@click.option("--artifact", "artifact_id", default=None, help="Artifact to record on close")
@click.option("--dry-run", is_flag=True)
def tasks_review(
    task_id: str,
    decision: str,
    reason: str,
    reviewer: str,
    artifact_id: str | None,
    dry_run: bool,
) -> None:
    """Apply a human review decision (retry, close, reject) to a blocked task."""
    _run(
        lambda s: review.review_task(
            s,
            task_id,
            decision,
            reason=reason,
            reviewer=reviewer,
            artifact_id=artifact_id,
            dry_run=dry_run,
        )
    )


# =============================================================================
# Policy
# =============================================================================


@main.group()
def policy() -> None:
    """Inspect the autonomy policy."""


@policy.command(name="show")
def policy_show() -> None:
    """Print the current policy document."""
    loaded = _policy().load()
    if not loaded.ok or loaded.policy is None:
        _emit(
            OpResult.failure(
                ErrorCode.POLICY_VALIDATION_FAILED,
                f"{loaded.error}: {loaded.detail}",
                policy_path=str(loaded.path),
            )
        )
        return
    _emit(
        OpResult.success(
            policy_path=str(loaded.path),
            version=loaded.policy.version,
            policy=loaded.policy.model_dump(),
        )
    )


@policy.command(name="validate")
@click.option("--path", "path", default=None, help="Policy file (defaults to configured path)")
def policy_validate(path: str | None) -> None:
    """Run deep structural checks on the policy document."""
    _emit(validate_policy(path or settings.policy_path))


# =============================================================================
# Decisions, overrides, artifacts, sessions
# =============================================================================


@main.group()
def override() -> None:
    """Human overrides for governance-flagged routes."""


@override.command(name="approve")
@click.argument("session_id")
@click.argument("intent")
@click.option("--reason", required=True)
@click.option("--approver", required=True)
def override_approve(session_id: str, intent: str, reason: str, approver: str) -> None:
    """Allow a governance-flagged intent to be dispatched in one session."""
    _run(
        lambda s: review.approve_override(
            s, session_id, intent, reason=reason, approver=approver
        )
    )


@main.group()
def decisions() -> None:
    """Inspect the decision trail."""


@decisions.command(name="list")
@click.option("--session", "session_id", default=None)
@click.option("--limit", default=20)
def decisions_list(session_id: str | None, limit: int) -> None:
    """List recent decisions, newest first."""

    async def op(session: AsyncSession) -> OpResult:
        rows = await db.list_decisions(session, session_id, limit)
        return OpResult.success(
            count=len(rows),
            decisions=[
                {
                    "id": d.id,
                    "session_id": d.session_id,
                    "ts": d.ts,
                    "decision_type": d.decision_type,
                    "subject": d.subject,
                    "options": d.options,
                    "selected_option": d.selected_option,
                    "rationale": d.rationale,
                    "approved_by": d.approved_by,
                }
                for d in rows
            ],
        )

    _run(op)


def _artifact_to_dict(artifact: Any, *, with_content: bool = True) -> dict[str, Any]:
    out = {
        "id": artifact.id,
        "session_id": artifact.session_id,
        "ts": artifact.ts,
        "type": artifact.type,
        "title": artifact.title,
        "classification": artifact.classification,
        "tags": artifact.tags,
        "content_sha256": artifact.content_sha256,
    }
    if with_content:
        out["content"] = artifact.content
    return out


@main.group()
def artifacts() -> None:
    """Inspect agent artifacts."""


@artifacts.command(name="get")
@click.argument("artifact_id")
def artifacts_get(artifact_id: str) -> None:
    """Show one artifact."""

    async def op(session: AsyncSession) -> OpResult:
        artifact = await db.get_artifact(session, artifact_id)
        if artifact is None:
            return OpResult.failure(
                ErrorCode.INVALID_ARGUMENT, f"artifact {artifact_id} not found"
            )
        return OpResult.success(artifact=_artifact_to_dict(artifact))

    _run(op)


@artifacts.command(name="latest")
@click.argument("session_id")
def artifacts_latest(session_id: str) -> None:
    """Show the most recent artifact in a session."""

    async def op(session: AsyncSession) -> OpResult:
        artifact = await db.latest_artifact(session, session_id)
        return OpResult.success(artifact=_artifact_to_dict(artifact) if artifact else None)

    _run(op)


@artifacts.command(name="list")
@click.argument("session_id")
@click.option("--limit", default=20)
def artifacts_list(session_id: str, limit: int) -> None:
    """List artifacts in a session (without content)."""

    async def op(session: AsyncSession) -> OpResult:
        rows = await db.list_artifacts(session, session_id, limit)
        return OpResult.success(
            count=len(rows),
            artifacts=[_artifact_to_dict(a, with_content=False) for a in rows],
        )

    _run(op)


@main.command(name="review-stats")
def review_stats_cmd() -> None:
    """Count tasks that needed human intervention, by cause and decision."""

    async def op(session: AsyncSession) -> OpResult:
        return OpResult.success(counts=await db.review_stats(session))

    _run(op)


@main.group()
def sessions() -> None:
    """Manage work sessions."""


@sessions.command(name="close")
@click.argument("session_id")
@click.option("--summary", default=None)
def sessions_close(session_id: str, summary: str | None) -> None:
    """Close a session and record its summary."""
    _run(
        lambda s: lifecycle.close_session(
            s, session_id, summary=summary, actor=settings.default_actor
        )
    )


if __name__ == "__main__":
    main()
