"""
Autonomy policy: loading, gate evaluation and deep validation.

The policy document is re-read on every evaluation so edits take effect on
the next cycle. Any failure to load it makes the gate fail closed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ErrorCode, OpResult
from .intents import Intent, normalize_intent

logger = logging.getLogger(__name__)

REQUIRED_KEYS = [
    "version",
    "tier1_allowed_intents",
    "tier2_founder_allowed_intents",
    "force_hitl_intents",
    "forbidden_phrases",
    "stop_loss_triggers",
    "artifact_retry_once_ms",
]
INTENT_TIERS = ["tier1_allowed_intents", "tier2_founder_allowed_intents", "force_hitl_intents"]
KNOWN_STOP_LOSS_TRIGGERS = {"REJECTED", "BLOCKED", "GATED", "REPAIR_FAILED"}
RETRY_MS_RANGE = (250, 5000)


class PolicyLoadError(StrEnum):
    FILE_NOT_FOUND = "POLICY_FILE_NOT_FOUND"
    FILE_READ_ERROR = "POLICY_FILE_READ_ERROR"
    FILE_PARSE_ERROR = "POLICY_FILE_PARSE_ERROR"
    MISSING_REQUIRED_KEYS = "POLICY_MISSING_REQUIRED_KEYS"
    TYPE_ERROR = "POLICY_TYPE_ERROR"


class GateReason(StrEnum):
    POLICY_LOAD_FAILED = "POLICY_LOAD_FAILED"
    FORBIDDEN_PHRASE = "FORBIDDEN_PHRASE"
    UNKNOWN_INTENT = "UNKNOWN_INTENT"
    FORCE_HITL_INTENT = "FORCE_HITL_INTENT"
    TIER2_INTENT = "TIER2_INTENT"
    TIER1_ALLOWED = "TIER1_ALLOWED"
    INTENT_NOT_IN_ALLOWLIST = "INTENT_NOT_IN_ALLOWLIST"


class AutonomyPolicy(BaseModel):
    model_config = ConfigDict(strict=True, extra="allow")

    version: str
    tier1_allowed_intents: list[str]
    tier2_founder_allowed_intents: list[str]
    force_hitl_intents: list[str]
    forbidden_phrases: list[str]
    stop_loss_triggers: list[str]
    artifact_retry_once_ms: int


@dataclass
class PolicyLoadResult:
    path: Path
    policy: AutonomyPolicy | None = None
    error: PolicyLoadError | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.policy is not None


@dataclass
class AutonomyVerdict:
    """Outcome of the autonomy gate for one task."""

    allowed: bool
    reason: GateReason
    intent: str | None = None
    phrase: str | None = None
    policy_version: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "intent": self.intent,
            "phrase": self.phrase,
            "policy_version": self.policy_version,
            "detail": self.detail,
        }


def _read_document(path: Path) -> tuple[dict[str, Any] | None, PolicyLoadError | None, str | None]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None, PolicyLoadError.FILE_NOT_FOUND, f"Policy file not found: {path}"
    except OSError as e:
        return None, PolicyLoadError.FILE_READ_ERROR, str(e)
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        return None, PolicyLoadError.FILE_PARSE_ERROR, str(e)
    if not isinstance(raw, dict):
        return None, PolicyLoadError.FILE_PARSE_ERROR, "Policy document must be a JSON object"
    return raw, None, None


class PolicyRepository:
    """Reads the autonomy policy from disk. Nothing is cached."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> PolicyLoadResult:
        raw, error, detail = _read_document(self.path)
        if raw is None:
            return PolicyLoadResult(self.path, error=error, detail=detail)

        missing = [k for k in REQUIRED_KEYS if k not in raw]
        if missing:
            return PolicyLoadResult(
                self.path,
                error=PolicyLoadError.MISSING_REQUIRED_KEYS,
                detail=f"Missing keys: {', '.join(missing)}",
            )
        try:
            policy = AutonomyPolicy.model_validate(raw)
        except ValidationError as e:
            return PolicyLoadResult(self.path, error=PolicyLoadError.TYPE_ERROR, detail=str(e))
        return PolicyLoadResult(self.path, policy=policy)

    def evaluate(self, intent: str | None, text: str) -> AutonomyVerdict:
        return evaluate_autonomy(self.load(), intent, text)


def evaluate_autonomy(loaded: PolicyLoadResult, intent: str | None, text: str) -> AutonomyVerdict:
    """Decide whether a task may be popped for unattended execution."""
    if not loaded.ok or loaded.policy is None:
        logger.warning("Autonomy policy unavailable (%s); gating", loaded.error)
        return AutonomyVerdict(
            allowed=False,
            reason=GateReason.POLICY_LOAD_FAILED,
            intent=intent,
            detail=f"{loaded.error}: {loaded.detail}",
        )

    policy = loaded.policy
    version = policy.version
    haystack = (text or "").lower()
    for phrase in policy.forbidden_phrases:
        needle = phrase.strip().lower()
        if needle and needle in haystack:
            return AutonomyVerdict(False, GateReason.FORBIDDEN_PHRASE, intent, needle, version)

    normalized = normalize_intent(intent)
    if normalized is None:
        return AutonomyVerdict(False, GateReason.UNKNOWN_INTENT, intent, policy_version=version)

    def tier(name: str) -> set[str]:
        return {str(i).strip().upper() for i in getattr(policy, name)}

    value = normalized.value
    if value in tier("force_hitl_intents"):
        return AutonomyVerdict(False, GateReason.FORCE_HITL_INTENT, value, policy_version=version)
    if value in tier("tier2_founder_allowed_intents"):
        return AutonomyVerdict(False, GateReason.TIER2_INTENT, value, policy_version=version)
    if value in tier("tier1_allowed_intents"):
        return AutonomyVerdict(True, GateReason.TIER1_ALLOWED, value, policy_version=version)
    return AutonomyVerdict(False, GateReason.INTENT_NOT_IN_ALLOWLIST, value, policy_version=version)


# =============================================================================
# Deep validation
# =============================================================================


@dataclass
class _Checks:
    checks: dict[str, dict[str, Any]] = field(default_factory=dict)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    failed: bool = False

    def passed(self, name: str, **info: Any) -> None:
        self.checks[name] = {"pass": True, **info}

    def fail(self, name: str, error: str, **info: Any) -> None:
        self.checks[name] = {"pass": False, "error": error, **info}
        self.failed = True

    def warn(self, name: str, message: str, **info: Any) -> None:
        self.checks[name] = {"pass": True, "warning": True, **info}
        self.warnings.append({"check": name, "message": message, **info})


def validate_policy(path: Path | str) -> OpResult:
    """Run the full set of structural checks against a policy document."""
    path = Path(path)
    result = _Checks()

    raw, error, detail = _read_document(path)
    if raw is None:
        result.fail("C1_PARSE", f"{error}: {detail}")
        return _validation_result(path, None, result)
    result.passed("C1_PARSE")

    missing = [k for k in REQUIRED_KEYS if k not in raw]
    if missing:
        result.fail("C2_REQUIRED_KEYS", "missing required keys", missing=missing)
        return _validation_result(path, raw.get("version"), result)
    result.passed("C2_REQUIRED_KEYS")

    array_keys = [*INTENT_TIERS, "forbidden_phrases", "stop_loss_triggers"]
    not_arrays = [k for k in array_keys if not isinstance(raw[k], list)]
    empty_tiers = [k for k in INTENT_TIERS if isinstance(raw[k], list) and not raw[k]]
    if not_arrays or empty_tiers:
        result.fail("C3_ARRAY_TYPES", "arrays required; intent tiers must be non-empty",
                    not_arrays=not_arrays, empty=empty_tiers)
        return _validation_result(path, raw.get("version"), result)
    result.passed("C3_ARRAY_TYPES")

    blanks = [
        k for k in array_keys
        if any(not isinstance(v, str) or not v.strip() for v in raw[k])
    ]
    if blanks:
        result.fail("C4_NO_BLANKS", "entries must be non-empty strings", keys=blanks)
    else:
        result.passed("C4_NO_BLANKS")

    phrases = [p for p in raw["forbidden_phrases"] if isinstance(p, str)]
    badly_formatted = [p for p in phrases if p != p.strip() or p != p.lower()]
    if badly_formatted:
        result.warn("C5_PHRASE_FORMAT", "forbidden_phrases should be trimmed and lowercase",
                    phrases=badly_formatted)
    else:
        result.passed("C5_PHRASE_FORMAT", phrases=len(phrases))

    retry = raw["artifact_retry_once_ms"]
    lo, hi = RETRY_MS_RANGE
    if isinstance(retry, bool) or not isinstance(retry, int) or not lo <= retry <= hi:
        result.fail("C6_RETRY_MS", f"artifact_retry_once_ms must be an integer in [{lo}, {hi}]",
                    value=retry)
    else:
        result.passed("C6_RETRY_MS", value=retry)

    known = {i.value for i in Intent}
    unknown = sorted(
        {str(i) for k in INTENT_TIERS for i in raw[k] if str(i).strip().upper() not in known}
    )
    if unknown:
        result.fail("C7_INTENT_ENUM", "intents not in the locked enum", unknown=unknown)
    else:
        result.passed("C7_INTENT_ENUM")

    seen: dict[str, str] = {}
    overlaps: list[dict[str, str]] = []
    for tier_name in INTENT_TIERS:
        for intent in raw[tier_name]:
            key = str(intent).strip().upper()
            if key in seen and seen[key] != tier_name:
                overlaps.append({"intent": key, "tiers": f"{seen[key]},{tier_name}"})
            seen.setdefault(key, tier_name)
    if overlaps:
        result.fail("C8_NO_OVERLAP", "an intent may appear in only one tier", overlaps=overlaps)
    else:
        result.passed("C8_NO_OVERLAP")

    version = raw["version"]
    if not isinstance(version, str) or not version.strip():
        result.fail("C9_VERSION", "version must be a non-empty string")
    else:
        result.passed("C9_VERSION", version=version)

    unknown_triggers = [t for t in raw["stop_loss_triggers"] if t not in KNOWN_STOP_LOSS_TRIGGERS]
    if unknown_triggers:
        result.warn("C10_TRIGGERS", "unknown stop_loss_triggers", unknown=unknown_triggers)
    else:
        result.passed("C10_TRIGGERS")

    return _validation_result(path, version, result)


def _validation_result(path: Path, version: Any, result: _Checks) -> OpResult:
    data = {
        "version": version,
        "policy_path": str(path),
        "checks": result.checks,
        "warnings": result.warnings,
    }
    if result.failed:
        failed = [name for name, check in result.checks.items() if not check["pass"]]
        return OpResult.failure(
            ErrorCode.POLICY_VALIDATION_FAILED, f"failed checks: {', '.join(failed)}", **data
        )
    return OpResult.success(**data)
