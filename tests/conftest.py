"""Shared test fixtures and configuration for pytest."""

import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from gatekeeper.db import Ledger, create_task, ensure_work_session
from gatekeeper.meta import TaskMeta
from gatekeeper.policy import PolicyRepository
from gatekeeper.registry import Registry

DATA_DIR = Path(__file__).resolve().parent.parent / "gatekeeper" / "data"

BASE_TIME = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Per-test SQLite ledger file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest_asyncio.fixture
async def ledger(database_url: str) -> AsyncGenerator[Ledger]:
    store = Ledger(database_url, busy_timeout=5.0)
    await store.init_db()
    yield store
    await store.dispose()


@pytest.fixture
def policy_doc() -> dict[str, Any]:
    return json.loads((DATA_DIR / "autonomy_v1.json").read_text(encoding="utf-8"))


@pytest.fixture
def policy_path(tmp_path: Path, policy_doc: dict[str, Any]) -> Path:
    path = tmp_path / "autonomy.json"
    path.write_text(json.dumps(policy_doc), encoding="utf-8")
    return path


@pytest.fixture
def policy(policy_path: Path) -> PolicyRepository:
    return PolicyRepository(policy_path)


@pytest.fixture
def registry() -> Registry:
    return Registry.load(DATA_DIR / "registry_v1.json")


@pytest.fixture
def request_payload() -> Callable[..., dict[str, Any]]:
    """Build a router intake payload; keyword arguments override fields."""

    def build(goal_text: str = "Plan the onboarding week for the new hire", **overrides: Any):
        payload: dict[str, Any] = {
            "request_id": "req-1",
            "session_id": "sess-1",
            "timestamp": "2026-01-01T09:00:00+00:00",
            "initiator": "user",
            "goal_text": goal_text,
            "constraints": {
                "no_public_exposure": True,
                "structured_outputs_only": True,
                "on_demand_only": True,
            },
            "context": {},
        }
        payload.update(overrides)
        return payload

    return build


@pytest.fixture
def make_task(ledger: Ledger) -> Callable[..., Awaitable[str]]:
    """Insert a task directly; ``age`` orders tasks deterministically (larger is older)."""

    async def make(
        title: str = "Write the weekly plan",
        *,
        intent: str | None = "PLAN_WORK",
        status: str = "todo",
        details: str | None = None,
        session_id: str | None = "sess-1",
        owner_agent: str | None = None,
        source: str = "live",
        age: int = 0,
        extra_meta: dict[str, Any] | None = None,
    ) -> str:
        async with ledger.session() as session:
            if session_id:
                await ensure_work_session(session, session_id)
            meta = TaskMeta(intent=intent, source=source).dump()
            task = await create_task(
                session,
                title=title,
                details=details,
                session_id=session_id,
                owner_agent=owner_agent,
                status=status,
                metadata={**meta, **(extra_meta or {})},
                created_at=BASE_TIME - timedelta(minutes=age),
            )
            return task.id

    return make
