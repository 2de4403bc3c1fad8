"""Agent registry and routing rules (read-mostly reference data)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError, model_validator

from . import db
from .intents import Intent

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

REQUIRED_OUTPUT_FIELDS = ["agent", "version", "intent", "summary", "outputs", "ledger_writes"]
ALWAYS_FORBIDDEN_OUTPUTS = ["publish", "send", "deploy"]


class RegistryError(ValueError):
    """Raised when the registry document cannot be loaded."""


class AgentContract(BaseModel):
    """What an agent must return when dispatched."""

    required_fields: list[str] = Field(default_factory=lambda: list(REQUIRED_OUTPUT_FIELDS))
    forbidden_outputs: list[str] = Field(default_factory=list)
    output_types: list[str] = Field(default_factory=list)

    @property
    def forbidden_tokens(self) -> list[str]:
        tokens = [t.lower() for t in self.forbidden_outputs]
        return tokens + [t for t in ALWAYS_FORBIDDEN_OUTPUTS if t not in tokens]


class AgentSpec(BaseModel):
    name: str
    version: str
    status: str = "active"
    purpose: str
    scope: dict[str, Any] = Field(default_factory=dict)
    io_schema: dict[str, Any] = Field(default_factory=dict)
    policies: dict[str, Any] = Field(default_factory=dict)
    priority: int = 100
    owner: str = "founder"
    contract: AgentContract = Field(default_factory=AgentContract)


class RoutingRuleSpec(BaseModel):
    intent: Intent
    primary_agent: str
    secondary_agents: list[str] = Field(default_factory=list)
    requires_governance_review: bool = False
    constraints: dict[str, Any] = Field(default_factory=dict)


class Registry(BaseModel):
    """Loaded once per process and passed explicitly to the router and dispatcher."""

    version: str
    agents: list[AgentSpec]
    routing_rules: list[RoutingRuleSpec]

    @model_validator(mode="after")
    def _check_references(self) -> Registry:
        names = {a.name for a in self.agents}
        for rule in self.routing_rules:
            missing = [n for n in [rule.primary_agent, *rule.secondary_agents] if n not in names]
            if missing:
                raise ValueError(f"routing rule {rule.intent} references unknown agents {missing}")
        return self

    @classmethod
    def load(cls, path: Path) -> Registry:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise RegistryError(f"Registry file not found: {path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"Could not read registry {path}: {e}") from e
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise RegistryError(f"Invalid registry {path}: {e}") from e

    def agent(self, name: str) -> AgentSpec | None:
        return next((a for a in self.agents if a.name == name), None)

    def rule_for(self, intent: str) -> RoutingRuleSpec | None:
        return next((r for r in self.routing_rules if r.intent == intent), None)


async def bootstrap(session: AsyncSession, registry: Registry, *, actor: str = "system") -> dict[str, Any]:
    """Upsert agents and routing rules into the ledger and log a boot action."""
    for spec in registry.agents:
        await db.upsert_agent(
            session,
            name=spec.name,
            version=spec.version,
            status=spec.status,
            purpose=spec.purpose,
            scope=spec.scope,
            io_schema=spec.io_schema,
            policies={**spec.policies, "contract": spec.contract.model_dump()},
            priority=spec.priority,
            owner=spec.owner,
        )
    for rule in registry.routing_rules:
        await db.upsert_routing_rule(
            session,
            intent=rule.intent.value,
            primary_agent=rule.primary_agent,
            secondary_agents=rule.secondary_agents,
            requires_governance_review=rule.requires_governance_review,
            constraints=rule.constraints,
        )

    boot = await db.ensure_work_session(session, f"boot-{registry.version}", initiator="system")
    action = await db.log_action(
        session,
        boot.id,
        actor=actor,
        type="registry_bootstrap",
        reason=f"registry {registry.version}",
        metadata={"agents": len(registry.agents), "routing_rules": len(registry.routing_rules)},
    )
    logger.info(
        "Registry %s bootstrapped: %d agents, %d rules",
        registry.version,
        len(registry.agents),
        len(registry.routing_rules),
    )
    return {
        "registry_version": registry.version,
        "agents": len(registry.agents),
        "routing_rules": len(registry.routing_rules),
        "session_id": boot.id,
        "action_id": action.id,
    }
