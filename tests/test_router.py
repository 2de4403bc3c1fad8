"""Tests for intake validation, classification and routing."""

import pytest
from sqlalchemy import select

from gatekeeper import db
from gatekeeper.errors import ErrorCode, OpResult
from gatekeeper.intents import FALLBACK_INTENT, Intent
from gatekeeper.models import Action, Decision, Message, WorkSession
from gatekeeper.router import (
    Router,
    RouterOutputVersionError,
    classify,
    parse_router_output,
)


@pytest.mark.parametrize(
    ("goal", "intent", "agent"),
    [
        ("Audit the vendor contract", Intent.GOVERNANCE_REVIEW, "governance"),
        ("Plan next week's priorities", Intent.PLAN_WORK, "cos"),
        ("Qualify the new prospect list", Intent.SALES_INTERNAL, "sales"),
        ("Draft the brand messaging", Intent.MARKETING_INTERNAL, "marketing_pr"),
        ("Scope the offer package", Intent.PRODUCT_OFFER, "product_offer"),
        ("Write an SOP for invoicing", Intent.OPS_INTERNAL, "ops"),
    ],
)
def test_classify_each_intent(goal: str, intent: Intent, agent: str) -> None:
    result = classify(goal)
    assert result.intent == intent
    assert result.primary_agent == agent
    assert not result.defaulted


def test_first_matching_rule_wins() -> None:
    # "plan" (PLAN_WORK) and "audit" (GOVERNANCE_REVIEW) both match; governance is listed first.
    result = classify("Plan the audit schedule")
    assert result.intent == Intent.GOVERNANCE_REVIEW
    assert result.matched_keyword == "audit"


def test_unmatched_goal_falls_back() -> None:
    result = classify("Hello there")
    assert result.intent == FALLBACK_INTENT
    assert result.defaulted


@pytest.mark.asyncio
async def test_route_approved_request(ledger, registry, request_payload) -> None:
    router = Router(registry)
    async with ledger.session() as session:
        result = await router.route(session, request_payload())

    assert result.ok
    output = result.data["router_output"]
    assert output["router_output_version"] == "v1"
    assert output["intent"] == "PLAN_WORK"
    assert output["route"]["primary_agent"] == "cos"
    assert output["gate_decision"] == "approve"
    assert output["requires_governance_review"] is False
    assert output["original_request"]["constraints"]["on_demand_only"] is True

    async with ledger.session() as session:
        actions = (await session.execute(select(Action))).scalars().all()
        decisions = (await session.execute(select(Decision))).scalars().all()
        messages = (await session.execute(select(Message))).scalars().all()
    assert [a.type for a in actions] == ["route"]
    assert [d.decision_type for d in decisions] == ["approve"]
    assert len(messages) == 2


@pytest.mark.asyncio
async def test_route_flagged_request_prepends_governance(ledger, registry, request_payload) -> None:
    router = Router(registry)
    async with ledger.session() as session:
        result = await router.route(
            session, request_payload("Scope the offer package for the new tier")
        )

    assert result.ok
    output = result.data["router_output"]
    assert output["intent"] == "PRODUCT_OFFER"
    assert output["gate_decision"] == "approve_with_flag"
    assert output["requires_governance_review"] is True
    assert output["route"]["secondary_agents"] == ["governance", "cos"]
    assert [s["action"] for s in output["plan"]] == ["governance_check", "dispatch"]


@pytest.mark.asyncio
async def test_unclassified_request_notes_default(ledger, registry, request_payload) -> None:
    router = Router(registry)
    async with ledger.session() as session:
        result = await router.route(session, request_payload("Hello there"))
    assert result.ok
    output = result.data["router_output"]
    assert output["intent"] == "GOVERNANCE_REVIEW"
    assert "unclassified_default=true" in output["route"]["notes"]


@pytest.mark.asyncio
async def test_send_email_is_denied_without_output(ledger, registry, request_payload) -> None:
    router = Router(registry)
    async with ledger.session() as session:
        result = await router.route(
            session, request_payload("send email to client about invoice")
        )

    assert not result.ok
    assert result.error == ErrorCode.GOVERNANCE_DENIED
    assert result.human_review_required
    assert "router_output" not in result.data
    assert "phrase:send email" in result.data["gate_flags"]

    async with ledger.session() as session:
        decision = await session.get(Decision, result.data["decision_id"])
        work_session = await session.get(WorkSession, "sess-1")
        actions = await db.list_actions(session, session_id="sess-1", action_type="route")
    assert decision.decision_type == "deny"
    assert work_session.metadata_["review_required"] is True
    assert [a.status for a in actions] == ["blocked"]


@pytest.mark.asyncio
async def test_false_constraint_is_denied(ledger, registry, request_payload) -> None:
    payload = request_payload()
    payload["constraints"]["structured_outputs_only"] = False
    router = Router(registry)
    async with ledger.session() as session:
        result = await router.route(session, payload)
    assert result.error == ErrorCode.GOVERNANCE_DENIED
    assert "router_output" not in result.data
    assert "constraint:structured_outputs_only" in result.data["gate_flags"]


@pytest.mark.asyncio
async def test_invalid_intake_writes_nothing(ledger, registry, request_payload) -> None:
    payload = request_payload()
    del payload["goal_text"]
    router = Router(registry)
    async with ledger.session() as session:
        result = await router.route(session, payload)

    assert result.error == ErrorCode.VALIDATION_FAILED
    assert any(e["path"] == "goal_text" for e in result.data["errors"])
    async with ledger.session() as session:
        assert (await session.execute(select(Action))).scalars().all() == []
        assert await db.get_work_session(session, "sess-1") is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"goal_text": "x" * 2001},
        {"goal_text": "   "},
        {"constraints": {"no_public_exposure": "yes", "structured_outputs_only": True,
                         "on_demand_only": True}},
        {"unexpected": 1},
    ],
)
def test_intake_rejects_bad_fields(registry, request_payload, overrides) -> None:
    result = Router(registry).validate(request_payload(**overrides))
    assert isinstance(result, OpResult)
    assert result.error == ErrorCode.VALIDATION_FAILED


@pytest.mark.asyncio
async def test_parse_router_output_round_trip_and_version(ledger, registry, request_payload) -> None:
    async with ledger.session() as session:
        result = await Router(registry).route(session, request_payload())
    data = result.data["router_output"]

    parsed = parse_router_output(data)
    assert parsed.intent == Intent.PLAN_WORK

    with pytest.raises(RouterOutputVersionError):
        parse_router_output({**data, "router_output_version": "v2"})


@pytest.mark.parametrize("document", [[], "v1", 3, None])
def test_parse_router_output_requires_object(document) -> None:
    with pytest.raises(ValueError, match="JSON object"):
        parse_router_output(document)


@pytest.mark.asyncio
async def test_intake_accepts_id_alias(ledger, registry, request_payload) -> None:
    payload = request_payload()
    payload["id"] = payload.pop("request_id")

    async with ledger.session() as session:
        result = await Router(registry).route(session, payload)
    assert result.ok
    assert result.data["router_output"]["request_id"] == "req-1"
