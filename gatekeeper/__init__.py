"""
Gatekeeper Ledger

Routes work requests to internal agents behind a deterministic governance
gate and an autonomy policy gate, and tracks each task through an auditable
todo -> doing -> done/blocked lifecycle with stop-loss containment and
human review, all backed by a SQLite ledger.
"""

__version__ = "0.1.0"

# Configuration
from gatekeeper.config import Settings

# Dispatch
from gatekeeper.dispatch import DispatchOutcome, DispatchState, Dispatcher

# Errors
from gatekeeper.errors import ErrorCode, LedgerStoreError, OpResult

# Ledger store
from gatekeeper.db import Ledger

# Governance gate
from gatekeeper.governance import GateDecision, GateResult, evaluate_gate
from gatekeeper.intents import Intent

# Core models
from gatekeeper.models import (
    Action,
    Agent,
    Artifact,
    Decision,
    Message,
    RoutingRule,
    Task,
    WorkSession,
)

# Autonomy policy
from gatekeeper.policy import AutonomyVerdict, PolicyRepository, validate_policy

# Registry
from gatekeeper.registry import Registry

# Human review
from gatekeeper.review import ReviewDecision, approve_override, review_task

# Routing
from gatekeeper.router import Router, RouterOutput, classify, parse_router_output

# Stop-loss
from gatekeeper.stop_loss import FailureType, apply_stop_loss

# Triage
from gatekeeper.triage import GovernanceTriage, TriageConfig

__all__ = [
    # Version
    "__version__",
    # Models
    "WorkSession",
    "Message",
    "Action",
    "Decision",
    "Task",
    "Artifact",
    "Agent",
    "RoutingRule",
    # Config
    "Settings",
    # Store
    "Ledger",
    "OpResult",
    "ErrorCode",
    "LedgerStoreError",
    # Routing
    "Intent",
    "Router",
    "RouterOutput",
    "classify",
    "parse_router_output",
    "Registry",
    # Gates
    "GateDecision",
    "GateResult",
    "evaluate_gate",
    "AutonomyVerdict",
    "PolicyRepository",
    "validate_policy",
    # Lifecycle
    "FailureType",
    "apply_stop_loss",
    "ReviewDecision",
    "review_task",
    "approve_override",
    # Dispatch
    "Dispatcher",
    "DispatchOutcome",
    "DispatchState",
    "GovernanceTriage",
    "TriageConfig",
]
