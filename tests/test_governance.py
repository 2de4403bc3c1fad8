"""Tests for the governance gate verdicts."""

import pytest

from gatekeeper.governance import (
    GateDecision,
    evaluate_gate,
    flag_phrases,
    unqualified_block_phrases,
)
from gatekeeper.intents import Intent

ALL_TRUE = {"no_public_exposure": True, "structured_outputs_only": True, "on_demand_only": True}


def gate(goal_text: str, **overrides):
    kwargs = {
        "goal_text": goal_text,
        "initiator": "user",
        "constraints": dict(ALL_TRUE),
        "intent": Intent.PLAN_WORK,
        "rule_requires_review": False,
    }
    kwargs.update(overrides)
    return evaluate_gate(**kwargs)


def test_plain_request_is_approved() -> None:
    result = gate("Plan the onboarding week")
    assert result.decision == GateDecision.APPROVE
    assert result.flags == []
    assert not result.requires_review


@pytest.mark.parametrize(
    "constraint", ["no_public_exposure", "structured_outputs_only", "on_demand_only"]
)
def test_any_false_constraint_denies(constraint: str) -> None:
    constraints = dict(ALL_TRUE, **{constraint: False})
    result = gate("Plan the onboarding week", constraints=constraints)
    assert result.decision == GateDecision.DENY
    assert f"constraint:{constraint}" in result.flags


def test_missing_constraint_denies() -> None:
    constraints = {"no_public_exposure": True, "structured_outputs_only": True}
    result = gate("Plan the onboarding week", constraints=constraints)
    assert result.decision == GateDecision.DENY
    assert "constraint:on_demand_only" in result.flags


def test_invalid_initiator_denies() -> None:
    result = gate("Plan the onboarding week", initiator="robot")
    assert result.decision == GateDecision.DENY
    assert "initiator:robot" in result.flags


def test_send_email_is_blocked() -> None:
    result = gate("send email to client about invoice")
    assert result.decision == GateDecision.DENY
    assert "phrase:send email" in result.flags


def test_internal_qualifier_exempts_block_phrase() -> None:
    assert unqualified_block_phrases("draft an internal post to the team wiki") == []
    assert unqualified_block_phrases("post to twitter") == ["post to"]


def test_qualifier_outside_window_does_not_exempt() -> None:
    text = "internal" + " " * 40 + "publish to the blog"
    assert unqualified_block_phrases(text) == ["publish to"]


def test_risk_flags_deny_and_flag() -> None:
    denied = gate("Plan the migration", risk_flags={"deployment": True})
    assert denied.decision == GateDecision.DENY
    assert "risk_flag:deployment" in denied.flags

    flagged = gate("Plan the newsletter", risk_flags={"external_comms": True})
    assert flagged.decision == GateDecision.APPROVE_WITH_FLAG
    assert "risk_flag:external_comms" in flagged.flags


def test_sensitive_intent_is_always_flagged() -> None:
    result = gate("Assess the vendor", intent=Intent.GOVERNANCE_REVIEW)
    assert result.decision == GateDecision.APPROVE_WITH_FLAG
    assert "intent:GOVERNANCE_REVIEW" in result.flags
    assert result.requires_review


def test_secondary_phrase_flags() -> None:
    assert flag_phrases("Rotate the credential and export the list") == ["credential", "export"]
    result = gate("Export the internal contact list")
    assert result.decision == GateDecision.APPROVE_WITH_FLAG
    assert "phrase:export" in result.flags


def test_rule_review_requirement_flags() -> None:
    result = gate("Draft the offer", rule_requires_review=True)
    assert result.decision == GateDecision.APPROVE_WITH_FLAG
    assert "routing_rule:requires_governance_review" in result.flags


def test_block_outranks_flag() -> None:
    result = gate("send sms with the security token", intent=Intent.GOVERNANCE_REVIEW)
    assert result.decision == GateDecision.DENY
    assert result.flags == ["phrase:send sms"]
