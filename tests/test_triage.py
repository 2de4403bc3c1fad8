import asyncio

import httpx
import pytest

from gatekeeper import db
from gatekeeper.dispatch import DispatchOutcome, DispatchState, Dispatcher
from gatekeeper.errors import ErrorCode
from gatekeeper.providers import HttpChatProvider, StubProvider
from gatekeeper.router import Router
from gatekeeper.triage import GovernanceTriage, TriageConfig


class GhostArtifactDispatcher(Dispatcher):
    """Reports success with an artifact id that never reaches the ledger."""

    async def dispatch(self, routed):
        return DispatchOutcome(
            DispatchState.DISPATCHED,
            "contract validated",
            session_id=routed.session_id,
            agent=routed.route.primary_agent,
            artifact_id="ghost-artifact",
        )


class HangingProvider:
    name = "hanging"

    async def chat(self, messages, **options):
        await asyncio.sleep(5)


@pytest.fixture
def triage(ledger, policy, registry):
    def build(provider=None, *, dispatcher_cls=Dispatcher, timeout_seconds=5.0, sleep=None):
        dispatcher = dispatcher_cls(
            ledger, registry, provider or StubProvider(), timeout_seconds=timeout_seconds
        )
        kwargs = {"sleep": sleep} if sleep else {}
        return GovernanceTriage(ledger, policy, Router(registry), dispatcher, **kwargs)

    return build


async def load_task(ledger, task_id):
    async with ledger.session() as session:
        return await db.get_task(session, task_id)


@pytest.mark.asyncio
async def test_cycle_dispatches_and_closes(ledger, triage, make_task) -> None:
    task_id = await make_task("Write the weekly plan")

    result = await triage().run_cycle()

    assert result.ok
    assert result.task_id == task_id
    assert result.data["dispatch"]["state"] == "DISPATCHED"
    task = await load_task(ledger, task_id)
    assert task.status == "done"
    assert task.metadata_["closure"]["artifact_id"] == result.data["dispatch"]["artifact_id"]
    assert task.metadata_["pop"]["run_id"] == result.data["run_id"]

    # The follow-up task the agent proposed is a stub and is never triaged.
    follow_up = await load_task(ledger, result.data["dispatch"]["follow_up_task_id"])
    assert follow_up.status == "todo"
    again = await triage().run_cycle()
    assert again.ok
    assert again.data["task"] is None


@pytest.mark.asyncio
async def test_cycle_can_leave_task_doing(ledger, triage, make_task) -> None:
    task_id = await make_task("Write the weekly plan")
    result = await triage().run_cycle(TriageConfig(close_on_success=False))
    assert result.ok
    assert result.data["status"] == "doing"
    assert (await load_task(ledger, task_id)).status == "doing"


@pytest.mark.asyncio
async def test_rejected_output_triggers_stop_loss(ledger, triage, make_task) -> None:
    task_id = await make_task("Write the weekly plan")

    result = await triage(StubProvider(valid=False)).run_cycle()

    assert not result.ok
    assert result.error == ErrorCode.DISPATCH_FAILED
    assert result.human_review_required
    assert result.data["failure_type"] == "REJECTED"
    assert result.data["stop_loss"]["ok"] is True
    task = await load_task(ledger, task_id)
    assert task.status == "blocked"
    assert task.metadata_["stop_loss"]["failure_type"] == "REJECTED"
    assert task.metadata_["stop_loss"]["run_id"] == result.data["run_id"]
    async with ledger.session() as session:
        actions = await db.list_actions(session, action_type="stop_loss", ref=task_id)
    assert len(actions) == 1

    # A blocked task is out of the queue until a human reviews it.
    assert (await triage().run_cycle()).data["task"] is None


@pytest.mark.asyncio
async def test_timeout_blocks_instead_of_stranding(ledger, triage, make_task) -> None:
    task_id = await make_task("Write the weekly plan")
    result = await triage(HangingProvider(), timeout_seconds=0.05).run_cycle()
    assert result.data["failure_type"] == "TIMEOUT"
    assert (await load_task(ledger, task_id)).status == "blocked"


@pytest.mark.asyncio
async def test_missing_artifact_waits_once(ledger, triage, make_task) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    task_id = await make_task("Write the weekly plan")
    result = await triage(dispatcher_cls=GhostArtifactDispatcher, sleep=fake_sleep).run_cycle()

    assert delays == [0.75]
    assert result.error == ErrorCode.DISPATCH_FAILED
    assert result.data["failure_type"] == "MISSING_ARTIFACT"
    assert (await load_task(ledger, task_id)).status == "blocked"


@pytest.mark.asyncio
async def test_policy_gated_task_never_dispatches(ledger, triage, make_task) -> None:
    task_id = await make_task("Qualify the leads", intent="SALES_INTERNAL")
    provider = StubProvider()

    result = await triage(provider).run_cycle()

    assert result.error == ErrorCode.POLICY_GATED
    assert provider.calls == []
    assert (await load_task(ledger, task_id)).status == "blocked"


@pytest.mark.asyncio
async def test_empty_queue(triage) -> None:
    result = await triage().run_cycle(TriageConfig(session_id="sess-1", owner="cos"))
    assert result.ok
    assert result.data["task"] is None


@pytest.mark.asyncio
async def test_non_text_provider_content_blocks_task(ledger, triage, make_task) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        message = {"role": "assistant", "content": [{"type": "text", "text": "{}"}]}
        return httpx.Response(200, json={"model": "m", "choices": [{"message": message}]})

    provider = HttpChatProvider(
        base_url="https://llm.test/v1",
        api_key=None,
        model="m",
        transport=httpx.MockTransport(handler),
    )
    task_id = await make_task("Write the weekly plan")

    try:
        result = await triage(provider).run_cycle()
    finally:
        await provider.aclose()

    assert result.error == ErrorCode.DISPATCH_FAILED
    assert result.data["failure_type"] == "DISPATCH_ERROR"
    task = await load_task(ledger, task_id)
    assert task.status == "blocked"
    assert task.metadata_["stop_loss"]["failure_type"] == "DISPATCH_ERROR"
