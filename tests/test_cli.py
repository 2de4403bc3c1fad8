import json

import pytest
from click.testing import CliRunner

from gatekeeper import cli


@pytest.fixture
def runner(monkeypatch, database_url, policy_path) -> CliRunner:
    monkeypatch.setattr(cli.settings, "database_url", database_url)
    monkeypatch.setattr(cli.settings, "policy_path", policy_path)
    monkeypatch.setattr(cli.settings, "llm_mode", "stub")
    runner = CliRunner()
    assert runner.invoke(cli.main, ["init-db"]).exit_code == 0
    return runner


def invoke(runner: CliRunner, *args: str, input: str | None = None):
    result = runner.invoke(cli.main, list(args), input=input)
    return result, json.loads(result.stdout) if result.stdout.lstrip().startswith("{") else None


def test_schema_check_after_init(runner) -> None:
    result = runner.invoke(cli.main, ["schema-check"])
    assert result.exit_code == 0
    assert "Schema ready" in result.stdout


def test_task_round_trip(runner) -> None:
    result, added = invoke(runner, "tasks", "add", "Write the weekly plan", "--intent", "PLAN_WORK",
                           "--session", "sess-1")
    assert result.exit_code == 0
    task_id = added["task_id"]

    result, popped = invoke(runner, "tasks", "next")
    assert result.exit_code == 0
    assert popped["task_id"] == task_id
    assert popped["task"]["status"] == "doing"

    result, closed = invoke(runner, "tasks", "close", task_id, "--reason", "plan delivered")
    assert result.exit_code == 0
    assert closed["task"]["status"] == "done"

    result, again = invoke(runner, "tasks", "close", task_id, "--reason", "plan delivered")
    assert result.exit_code == 1
    assert again["error"] == "STATUS_GUARD_FAILED"


def test_gated_pop_exits_nonzero(runner) -> None:
    invoke(runner, "tasks", "add", "Draft the new offer", "--intent", "PRODUCT_OFFER")
    result, body = invoke(runner, "tasks", "next")
    assert result.exit_code == 1
    assert body["error"] == "POLICY_GATED"
    assert body["human_review_required"] is True


def test_route_and_dispatch_from_stdin(runner, request_payload) -> None:
    result, body = invoke(
        runner, "route", "-", "--dispatch", input=json.dumps(request_payload())
    )
    assert result.exit_code == 0
    assert body["router_output"]["route"]["primary_agent"] == "cos"
    assert body["dispatch"]["state"] == "DISPATCHED"


def test_route_denied(runner, request_payload) -> None:
    payload = request_payload("Send email to every client about the plan")
    result, body = invoke(runner, "route", "-", input=json.dumps(payload))
    assert result.exit_code == 1
    assert body["error"] == "GOVERNANCE_DENIED"


def test_route_rejects_bad_json(runner) -> None:
    result, body = invoke(runner, "route", "-", input="{not json")
    assert result.exit_code == 1
    assert body["error"] == "VALIDATION_FAILED"


def test_triage_with_bad_stub(runner, monkeypatch) -> None:
    monkeypatch.setattr(cli.settings, "llm_mode", "bad_stub")
    invoke(runner, "tasks", "add", "Write the weekly plan", "--intent", "PLAN_WORK",
           "--session", "sess-1")

    result, body = invoke(runner, "triage")
    assert result.exit_code == 1
    assert body["failure_type"] == "REJECTED"

    result, stats = invoke(runner, "review-stats")
    assert result.exit_code == 0
    assert stats["counts"]["stop_loss"] == 1


def test_policy_validate(runner, policy_path) -> None:
    result, body = invoke(runner, "policy", "validate")
    assert result.exit_code == 0
    assert body["ok"] is True

    policy_path.write_text("[]", encoding="utf-8")
    result, body = invoke(runner, "policy", "validate")
    assert result.exit_code == 1
    assert body["error"] == "POLICY_VALIDATION_FAILED"


@pytest.mark.parametrize("document", ["[]", "42", '"v1"'])
def test_check_output_rejects_non_objects(runner, tmp_path, document: str) -> None:
    path = tmp_path / "output.json"
    path.write_text(document, encoding="utf-8")
    result, body = invoke(runner, "check-output", str(path))
    assert result.exit_code == 1
    assert body["error"] == "VALIDATION_FAILED"


def test_review_close_records_artifact_option(runner) -> None:
    result = runner.invoke(cli.main, ["tasks", "review", "--help"])
    assert "--artifact" in result.stdout
