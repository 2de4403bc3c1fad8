"""Tests for autonomy policy loading, evaluation and validation."""

import json

import pytest

from gatekeeper.errors import ErrorCode
from gatekeeper.policy import GateReason, PolicyLoadError, PolicyRepository, validate_policy


def test_bundled_policy_loads(policy: PolicyRepository) -> None:
    loaded = policy.load()
    assert loaded.ok
    assert loaded.policy.version == "1.0"


@pytest.mark.parametrize(
    ("intent", "allowed", "reason"),
    [
        ("PLAN_WORK", True, GateReason.TIER1_ALLOWED),
        ("ops_internal", True, GateReason.TIER1_ALLOWED),
        ("SALES_INTERNAL", False, GateReason.TIER2_INTENT),
        ("PRODUCT_OFFER", False, GateReason.FORCE_HITL_INTENT),
        ("GOVERNANCE_REVIEW", False, GateReason.FORCE_HITL_INTENT),
        (None, False, GateReason.UNKNOWN_INTENT),
        ("MAKE_COFFEE", False, GateReason.UNKNOWN_INTENT),
    ],
)
def test_intent_tiers(policy: PolicyRepository, intent, allowed, reason) -> None:
    verdict = policy.evaluate(intent, "Write the weekly plan")
    assert verdict.allowed is allowed
    assert verdict.reason == reason


def test_forbidden_phrase_overrides_tier1(policy: PolicyRepository) -> None:
    verdict = policy.evaluate("PLAN_WORK", "Plan then Send Email to the board")
    assert not verdict.allowed
    assert verdict.reason == GateReason.FORBIDDEN_PHRASE
    assert verdict.phrase == "send email"


def test_intent_missing_from_every_tier_is_denied(policy_path, policy_doc) -> None:
    policy_doc["tier1_allowed_intents"] = ["PLAN_WORK"]
    policy_path.write_text(json.dumps(policy_doc), encoding="utf-8")
    verdict = PolicyRepository(policy_path).evaluate("OPS_INTERNAL", "Write the checklist")
    assert verdict.reason == GateReason.INTENT_NOT_IN_ALLOWLIST


def test_edits_take_effect_without_reload(policy_path, policy_doc) -> None:
    repo = PolicyRepository(policy_path)
    assert repo.evaluate("SALES_INTERNAL", "Qualify leads").allowed is False

    policy_doc["tier2_founder_allowed_intents"] = ["MARKETING_INTERNAL"]
    policy_doc["tier1_allowed_intents"].append("SALES_INTERNAL")
    policy_path.write_text(json.dumps(policy_doc), encoding="utf-8")
    assert repo.evaluate("SALES_INTERNAL", "Qualify leads").allowed is True


@pytest.mark.parametrize(
    ("content", "error"),
    [
        (None, PolicyLoadError.FILE_NOT_FOUND),
        ("{not json", PolicyLoadError.FILE_PARSE_ERROR),
        ('["a list"]', PolicyLoadError.FILE_PARSE_ERROR),
        ('{"version": "1.0"}', PolicyLoadError.MISSING_REQUIRED_KEYS),
    ],
)
def test_load_failures_fail_closed(tmp_path, content, error) -> None:
    path = tmp_path / "broken.json"
    if content is not None:
        path.write_text(content, encoding="utf-8")
    repo = PolicyRepository(path)

    loaded = repo.load()
    assert not loaded.ok
    assert loaded.error == error
    verdict = repo.evaluate("PLAN_WORK", "Write the weekly plan")
    assert not verdict.allowed
    assert verdict.reason == GateReason.POLICY_LOAD_FAILED


def test_wrong_types_fail_closed(policy_path, policy_doc) -> None:
    policy_doc["artifact_retry_once_ms"] = "750"
    policy_path.write_text(json.dumps(policy_doc), encoding="utf-8")
    repo = PolicyRepository(policy_path)
    assert repo.load().error == PolicyLoadError.TYPE_ERROR
    assert repo.evaluate("PLAN_WORK", "Write the weekly plan").reason == GateReason.POLICY_LOAD_FAILED


def test_validate_bundled_policy(policy_path) -> None:
    result = validate_policy(policy_path)
    assert result.ok
    assert result.data["version"] == "1.0"
    assert all(check["pass"] for check in result.data["checks"].values())
    assert result.data["warnings"] == []


def test_validate_reports_overlap_and_bad_retry(policy_path, policy_doc) -> None:
    policy_doc["tier2_founder_allowed_intents"].append("PLAN_WORK")
    policy_doc["artifact_retry_once_ms"] = 10
    policy_path.write_text(json.dumps(policy_doc), encoding="utf-8")

    result = validate_policy(policy_path)
    assert not result.ok
    assert result.error == ErrorCode.POLICY_VALIDATION_FAILED
    checks = result.data["checks"]
    assert checks["C8_NO_OVERLAP"]["pass"] is False
    assert checks["C6_RETRY_MS"]["pass"] is False
    assert checks["C7_INTENT_ENUM"]["pass"] is True


def test_validate_unknown_intent_and_empty_tier(policy_path, policy_doc) -> None:
    policy_doc["tier1_allowed_intents"] = ["PLAN_WORK", "MAKE_COFFEE"]
    policy_path.write_text(json.dumps(policy_doc), encoding="utf-8")
    assert validate_policy(policy_path).data["checks"]["C7_INTENT_ENUM"]["unknown"] == [
        "MAKE_COFFEE"
    ]

    policy_doc["force_hitl_intents"] = []
    policy_path.write_text(json.dumps(policy_doc), encoding="utf-8")
    result = validate_policy(policy_path)
    assert result.data["checks"]["C3_ARRAY_TYPES"]["empty"] == ["force_hitl_intents"]


def test_validate_warnings_do_not_fail(policy_path, policy_doc) -> None:
    policy_doc["forbidden_phrases"].append("  Wire Money ")
    policy_doc["stop_loss_triggers"].append("COSMIC_RAY")
    policy_path.write_text(json.dumps(policy_doc), encoding="utf-8")

    result = validate_policy(policy_path)
    assert result.ok
    assert {w["check"] for w in result.data["warnings"]} == {"C5_PHRASE_FORMAT", "C10_TRIGGERS"}


def test_validate_missing_file(tmp_path) -> None:
    result = validate_policy(tmp_path / "missing.json")
    assert not result.ok
    assert result.data["checks"]["C1_PARSE"]["pass"] is False
