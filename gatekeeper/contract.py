"""Validation of agent output against its registry contract."""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from typing import Any

from .intents import Intent
from .registry import AgentContract, AgentSpec

VALID_LEDGER_TABLES = {
    "sessions",
    "messages",
    "actions",
    "decisions",
    "tasks",
    "artifacts",
    "agents",
    "routing_rules",
}
OPTIONAL_ARRAYS = ("next_actions", "risks", "assumptions", "requests_to_user")
MAX_OUTPUTS = 10
MAX_LEDGER_WRITES = 20
MAX_OPTIONAL_ITEMS = 20
MAX_SUMMARY_CHARS = 300
MAX_OBJECT_CONTENT_CHARS = 4000


@dataclass
class ContractViolation:
    code: str
    path: str
    msg: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class _Collector:
    def __init__(self) -> None:
        self.errors: list[ContractViolation] = []

    def add(self, code: str, path: str, msg: str) -> None:
        self.errors.append(ContractViolation(code, path, msg))

    def string(self, value: Any, lo: int, hi: int, path: str, code: str) -> None:
        if not isinstance(value, str):
            self.add(code, path, f"expected string, got {type(value).__name__}")
        elif not lo <= len(value) <= hi:
            self.add(code, path, f"string length {len(value)} out of range [{lo}..{hi}]")

    def array(self, value: Any, hi: int, path: str, code: str) -> bool:
        if not isinstance(value, list):
            self.add(code, path, f"expected array, got {type(value).__name__}")
            return False
        if len(value) > hi:
            self.add(code, path, f"array length {len(value)} exceeds max {hi}")
            return False
        return True


def _forbidden_tokens(output: dict[str, Any], contract: AgentContract) -> list[str]:
    text = json.dumps(output, ensure_ascii=False).lower()
    return [
        token
        for token in contract.forbidden_tokens
        if re.search(rf"\b{re.escape(token)}", text)
    ]


def validate_against_contract(agent: AgentSpec, output: Any) -> list[ContractViolation]:
    """Return every contract violation in ``output`` (empty list means valid)."""
    c = _Collector()
    if not isinstance(output, dict):
        c.add("OUTPUT_NOT_OBJECT", "", "agent output must be a JSON object")
        return c.errors

    contract = agent.contract
    for name in contract.required_fields:
        if name not in output:
            c.add("MISSING_REQUIRED_FIELD", name, f'required field "{name}" is absent')

    for token in _forbidden_tokens(output, contract):
        c.add("FORBIDDEN_OUTPUT_TOKEN", "output", f'forbidden token found: "{token}"')

    if "agent" in output and output["agent"] != agent.name:
        c.add("AGENT_MISMATCH", "agent", f'expected "{agent.name}", got "{output["agent"]}"')
    if "version" in output and output["version"] != agent.version:
        c.add("VERSION_MISMATCH", "version", f'expected "{agent.version}", got "{output["version"]}"')
    if "intent" in output and output["intent"] not in {i.value for i in Intent}:
        c.add("INVALID_INTENT", "intent", f'"{output["intent"]}" is not a recognised intent')
    if "summary" in output:
        c.string(output["summary"], 1, MAX_SUMMARY_CHARS, "summary", "SUMMARY_LENGTH")

    if "outputs" in output and c.array(output["outputs"], MAX_OUTPUTS, "outputs", "OUTPUTS_ARRAY"):
        for i, item in enumerate(output["outputs"]):
            _check_output_item(c, agent, item, f"outputs[{i}]")

    if "ledger_writes" in output and c.array(
        output["ledger_writes"], MAX_LEDGER_WRITES, "ledger_writes", "LEDGER_WRITES_ARRAY"
    ):
        for i, item in enumerate(output["ledger_writes"]):
            base = f"ledger_writes[{i}]"
            if not isinstance(item, dict):
                c.add("LEDGER_WRITES_ITEM_NOT_OBJECT", base, "each ledger_writes item must be an object")
                continue
            if item.get("table") not in VALID_LEDGER_TABLES:
                c.add("LEDGER_WRITES_INVALID_TABLE", f"{base}.table",
                      f'"{item.get("table")}" is not a valid ledger table')
            c.string(item.get("type"), 1, 40, f"{base}.type", "LEDGER_WRITES_TYPE_LENGTH")

    for key in OPTIONAL_ARRAYS:
        if output.get(key) is not None:
            c.array(output[key], MAX_OPTIONAL_ITEMS, key, f"{key.upper()}_ARRAY")

    if isinstance(output.get("next_actions"), list):
        for i, item in enumerate(output["next_actions"]):
            base = f"next_actions[{i}]"
            if not isinstance(item, dict):
                c.add("NEXT_ACTIONS_ITEM_NOT_OBJECT", base, "each next_actions item must be an object")
                continue
            c.string(item.get("title"), 1, 120, f"{base}.title", "NEXT_ACTIONS_TITLE_LENGTH")
            if item.get("details") is not None:
                c.string(item["details"], 0, 1000, f"{base}.details", "NEXT_ACTIONS_DETAILS_LENGTH")
            c.string(item.get("owner_agent"), 1, 40, f"{base}.owner_agent", "NEXT_ACTIONS_OWNER_LENGTH")

    return c.errors


def _check_output_item(c: _Collector, agent: AgentSpec, item: Any, base: str) -> None:
    if not isinstance(item, dict):
        c.add("OUTPUTS_ITEM_NOT_OBJECT", base, "each outputs item must be an object")
        return
    c.string(item.get("type"), 1, 40, f"{base}.type", "OUTPUTS_ITEM_TYPE_LENGTH")
    allowed = agent.contract.output_types
    if allowed and isinstance(item.get("type"), str) and item["type"] not in allowed:
        c.add("OUTPUTS_ITEM_TYPE_NOT_DECLARED", f"{base}.type",
              f'"{item["type"]}" is not declared for agent {agent.name}: {allowed}')
    c.string(item.get("title"), 1, 120, f"{base}.title", "OUTPUTS_ITEM_TITLE_LENGTH")

    content = item.get("content")
    if "content" not in item:
        c.add("OUTPUTS_ITEM_MISSING_FIELD", f"{base}.content", 'field "content" is required')
    elif isinstance(content, dict):
        size = len(json.dumps(content))
        if size > MAX_OBJECT_CONTENT_CHARS:
            c.add("OUTPUTS_ITEM_CONTENT_TOO_LARGE", f"{base}.content",
                  f"object content JSON length {size} exceeds {MAX_OBJECT_CONTENT_CHARS}")
    elif not isinstance(content, str):
        c.add("OUTPUTS_ITEM_CONTENT_TYPE", f"{base}.content", "content must be a string or object")
