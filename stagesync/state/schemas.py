"""Pydantic DTOs for stage state payloads and records.

Payload models validate the JSON documents collaborators exchange. Field
names are snake_case in Python and camelCase on the wire (aliases), so a
payload round-trips unchanged through model_validate / model_dump.
Unknown top-level keys are dropped, which is how stray client fields
(including ``version`` itself) are stripped before storage.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ScenarioName = Literal["bear", "base", "bull"]
CommentStatus = Literal["open", "resolved"]
CritiqueSeverity = Literal["High", "Med", "Low"]


class WireModel(BaseModel):
    """Base for payload models: camelCase aliases, unknown keys ignored.

    Strict, so a value of the wrong JSON type is rejected rather than coerced
    (ints are still accepted where a float is expected).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", strict=True)


# --- Memo ---


class MemoAttachment(WireModel):
    include: bool
    caption: str | None = None


class MemoComment(WireModel):
    id: str
    author: str
    message: str
    status: CommentStatus
    created_at: str


class MemoState(WireModel):
    sections: dict[str, str]
    review_checklist: dict[str, bool]
    attachments: dict[str, MemoAttachment]
    comment_threads: dict[str, list[MemoComment]]


# --- Valuation ---


class ValuationState(WireModel):
    selected_scenario: ScenarioName
    assumption_overrides: dict[str, float]


# --- Monitoring ---


class MonitoringState(WireModel):
    acknowledged_alerts: dict[str, bool]
    delta_overrides: dict[str, str]


# --- Normalization ---


class NormalizationState(WireModel):
    reconciled_sources: dict[str, bool]
    applied_adjustments: dict[str, bool]


# --- Scenario lab ---


class ScenarioLabState(WireModel):
    driver_values: dict[str, float]
    iterations: int = Field(ge=1)


# --- Execution planner ---


class ExecutionPlannerState(WireModel):
    rows: list[dict[str, Any]]  # order rows are derived client-side; stored as-is
    portfolio_notional: float
    max_part: float
    algo: str
    limit_bps: float
    tif: str
    days_horizon: int = Field(ge=0)


# --- Red team ---


class Critique(WireModel):
    id: int
    playbook: str
    severity: CritiqueSeverity
    claim: str
    rationale: str
    action: str
    decided: bool | None = None


class ScanHit(WireModel):
    id: str
    src: str
    excerpt: str


class VulnerabilityItem(WireModel):
    id: str
    label: str
    completed: bool
    playbook: str | None = None


class RedTeamState(WireModel):
    artifact: str
    scope: list[str]
    active_playbooks: list[str]
    critiques: list[Critique]
    scan_query: str
    scan_hits: list[ScanHit]
    vulnerability_checklist: list[VulnerabilityItem]


# --- Records ---


class StateRecord(BaseModel):
    """Canonical stored document for one (session, kind) key."""

    session_id: str
    kind: str
    payload: dict[str, Any]
    version: int
    updated_at: datetime


class StateHistoryEntry(BaseModel):
    """One accepted save, as recorded in the change history."""

    id: UUID
    session_id: str
    kind: str
    actor_id: str
    version: int
    state: dict[str, Any]
    created_at: datetime
