"""Tests for agent dispatch: gating, contract repair, timeouts and outputs."""

import asyncio
from typing import Any

import pytest

from gatekeeper import db
from gatekeeper.dispatch import ORIGIN_TAG, Dispatcher, DispatchState
from gatekeeper.meta import TaskMeta
from gatekeeper.providers import ChatMessage, ChatResponse, ProviderError, StubProvider
from gatekeeper.review import approve_override
from gatekeeper.router import Router, parse_router_output


class SlowProvider:
    name = "slow"

    async def chat(self, messages: list[ChatMessage], **options: Any) -> ChatResponse:
        await asyncio.sleep(5)
        return ChatResponse(content="{}", model="slow")


class FailingProvider:
    name = "failing"

    async def chat(self, messages: list[ChatMessage], **options: Any) -> ChatResponse:
        raise ProviderError("backend unavailable")


class RepairingProvider:
    """Returns invalid output first, then valid output once asked to repair."""

    name = "repairing"

    def __init__(self) -> None:
        self.bad = StubProvider(valid=False)
        self.good = StubProvider(valid=True)
        self.calls = 0

    async def chat(self, messages: list[ChatMessage], **options: Any) -> ChatResponse:
        self.calls += 1
        provider = self.bad if self.calls == 1 else self.good
        return await provider.chat(messages)


async def routed(ledger, registry, request_payload, goal: str | None = None):
    payload = request_payload(goal) if goal else request_payload()
    async with ledger.session() as session:
        result = await Router(registry).route(session, payload)
    assert result.ok
    return parse_router_output(result.data["router_output"])


@pytest.mark.asyncio
async def test_dispatch_success_writes_outputs(ledger, registry, request_payload) -> None:
    provider = StubProvider()
    dispatcher = Dispatcher(ledger, registry, provider, timeout_seconds=5)
    outcome = await dispatcher.dispatch(await routed(ledger, registry, request_payload))

    assert outcome.state == DispatchState.DISPATCHED
    assert outcome.ok
    assert not outcome.repair_attempted
    assert len(provider.calls) == 1

    async with ledger.session() as session:
        artifact = await db.get_artifact(session, outcome.artifact_id)
        follow_up = await db.get_task(session, outcome.follow_up_task_id)
        actions = await db.list_actions(session, session_id="sess-1", action_type="dispatch")
    assert ORIGIN_TAG in artifact.tags
    assert "agent:cos" in artifact.tags
    assert "provider:stub" in artifact.tags
    assert artifact.classification == "internal"
    assert artifact.content_sha256 == db.sha256_hex(artifact.content)
    assert follow_up.status == "todo"
    assert TaskMeta.of(follow_up.metadata_).is_stub
    assert follow_up.metadata_["artifact_id"] == artifact.id
    assert [a.status for a in actions] == ["ok"]


@pytest.mark.asyncio
async def test_flagged_route_is_gated_without_override(ledger, registry, request_payload) -> None:
    provider = StubProvider()
    dispatcher = Dispatcher(ledger, registry, provider, timeout_seconds=5)
    route = await routed(ledger, registry, request_payload, "Scope the offer package")
    assert route.requires_governance_review

    outcome = await dispatcher.dispatch(route)
    assert outcome.state == DispatchState.GATED
    assert provider.calls == []

    async with ledger.session() as session:
        await approve_override(
            session, "sess-1", "PRODUCT_OFFER", reason="founder signed off", approver="founder"
        )
    outcome = await dispatcher.dispatch(route)
    assert outcome.state == DispatchState.DISPATCHED


@pytest.mark.asyncio
async def test_invalid_output_is_rejected_after_one_repair(ledger, registry, request_payload) -> None:
    provider = StubProvider(valid=False)
    dispatcher = Dispatcher(ledger, registry, provider, timeout_seconds=5)
    outcome = await dispatcher.dispatch(await routed(ledger, registry, request_payload))

    assert outcome.state == DispatchState.REJECTED
    assert outcome.repair_attempted
    assert not outcome.repair_succeeded
    assert len(provider.calls) == 2
    assert "repair" in provider.calls[1][-1].content
    assert {e["code"] for e in outcome.errors} >= {"SUMMARY_LENGTH", "MISSING_REQUIRED_FIELD"}
    assert outcome.artifact_id is None

    async with ledger.session() as session:
        actions = await db.list_actions(session, session_id="sess-1", action_type="dispatch")
    assert [a.status for a in actions] == ["failed"]


@pytest.mark.asyncio
async def test_repair_can_succeed(ledger, registry, request_payload) -> None:
    dispatcher = Dispatcher(ledger, registry, RepairingProvider(), timeout_seconds=5)
    outcome = await dispatcher.dispatch(await routed(ledger, registry, request_payload))
    assert outcome.state == DispatchState.DISPATCHED
    assert outcome.repair_attempted
    assert outcome.repair_succeeded
    assert outcome.artifact_id


@pytest.mark.asyncio
async def test_timeout_is_a_failure(ledger, registry, request_payload) -> None:
    dispatcher = Dispatcher(ledger, registry, SlowProvider(), timeout_seconds=0.05)
    outcome = await dispatcher.dispatch(await routed(ledger, registry, request_payload))
    assert outcome.state == DispatchState.TIMEOUT
    assert outcome.action_id


@pytest.mark.asyncio
async def test_provider_error(ledger, registry, request_payload) -> None:
    dispatcher = Dispatcher(ledger, registry, FailingProvider(), timeout_seconds=5)
    outcome = await dispatcher.dispatch(await routed(ledger, registry, request_payload))
    assert outcome.state == DispatchState.ERROR
    assert "backend unavailable" in outcome.reason


@pytest.mark.asyncio
async def test_unknown_agent(ledger, registry, request_payload) -> None:
    route = await routed(ledger, registry, request_payload)
    trimmed = registry.model_copy(
        update={"agents": [a for a in registry.agents if a.name != "cos"]}
    )
    outcome = await Dispatcher(ledger, trimmed, StubProvider()).dispatch(route)
    assert outcome.state == DispatchState.ERROR
    assert "not registered" in outcome.reason


class ListContentProvider:
    name = "list-content"

    async def chat(self, messages: list[ChatMessage], **options: Any) -> ChatResponse:
        return ChatResponse(content=[{"type": "text", "text": "{}"}], model="list")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_non_string_output_is_rejected(ledger, registry, request_payload) -> None:
    dispatcher = Dispatcher(ledger, registry, ListContentProvider(), timeout_seconds=5)
    outcome = await dispatcher.dispatch(await routed(ledger, registry, request_payload))
    assert outcome.state == DispatchState.REJECTED
    assert {e["code"] for e in outcome.errors} == {"OUTPUT_NOT_JSON"}
