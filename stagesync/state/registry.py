"""Catalogue of stage state document kinds.

The registry is the only place that knows payload shapes. Each kind maps to
a pydantic model (the structural validator) and an empty default document.
VersionedStateStore and ConflictResolver only ever see ``kind`` strings and
plain dicts; adding a document kind means adding one StateKind below.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from stagesync.state.errors import StateValidationError, UnknownStateKind
from stagesync.state.schemas import (
    ExecutionPlannerState,
    MemoState,
    MonitoringState,
    NormalizationState,
    RedTeamState,
    ScenarioLabState,
    ValuationState,
)


@dataclass(frozen=True)
class StateKind:
    """One registered document kind."""

    name: str
    label: str  # used in caller-facing messages
    model: type[BaseModel]
    empty: dict[str, Any]

    def validate(self, payload: Any) -> dict[str, Any]:
        """Return the canonical form of ``payload`` or raise StateValidationError."""
        if not isinstance(payload, dict):
            raise StateValidationError(self.name, self.label, [{"msg": "payload must be a JSON object"}])
        try:
            model = self.model.model_validate(payload)
        except ValidationError as e:
            raise StateValidationError(
                self.name,
                self.label,
                e.errors(include_url=False, include_context=False, include_input=False),
            ) from e
        return model.model_dump(mode="json", by_alias=True, exclude_unset=True)

    def empty_document(self) -> dict[str, Any]:
        """Fresh copy of the empty default; callers may mutate it."""
        return copy.deepcopy(self.empty)


class StateTypeRegistry:
    """Closed table of kind -> (validator, empty default)."""

    def __init__(self, kinds: list[StateKind] | None = None) -> None:
        self._kinds: dict[str, StateKind] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: StateKind) -> None:
        if kind.name in self._kinds:
            raise ValueError(f"State kind '{kind.name}' already registered")
        # The empty default must itself be a valid document
        kind.validate(kind.empty)
        self._kinds[kind.name] = kind

    def get(self, name: str) -> StateKind:
        try:
            return self._kinds[name]
        except KeyError:
            raise UnknownStateKind(name) from None

    def validate(self, name: str, payload: Any) -> dict[str, Any]:
        return self.get(name).validate(payload)

    def empty(self, name: str) -> dict[str, Any]:
        return self.get(name).empty_document()

    def names(self) -> list[str]:
        return list(self._kinds)

    def __contains__(self, name: object) -> bool:
        return name in self._kinds

    def __iter__(self) -> Iterator[StateKind]:
        return iter(self._kinds.values())

    def __len__(self) -> int:
        return len(self._kinds)


def default_registry() -> StateTypeRegistry:
    """The seven workbench document kinds."""
    return StateTypeRegistry(
        [
            StateKind(
                name="memo",
                label="memo",
                model=MemoState,
                empty={"sections": {}, "reviewChecklist": {}, "attachments": {}, "commentThreads": {}},
            ),
            StateKind(
                name="valuation",
                label="valuation",
                model=ValuationState,
                empty={"selectedScenario": "base", "assumptionOverrides": {}},
            ),
            StateKind(
                name="monitoring",
                label="monitoring",
                model=MonitoringState,
                empty={"acknowledgedAlerts": {}, "deltaOverrides": {}},
            ),
            StateKind(
                name="normalization",
                label="normalization",
                model=NormalizationState,
                empty={"reconciledSources": {}, "appliedAdjustments": {}},
            ),
            StateKind(
                name="scenario-lab",
                label="scenario lab",
                model=ScenarioLabState,
                empty={"driverValues": {}, "iterations": 500},
            ),
            StateKind(
                name="execution-planner",
                label="execution planner",
                model=ExecutionPlannerState,
                empty={
                    "rows": [],
                    "portfolioNotional": 100,
                    "maxPart": 15,
                    "algo": "VWAP",
                    "limitBps": 20,
                    "tif": "Day",
                    "daysHorizon": 3,
                },
            ),
            StateKind(
                name="red-team",
                label="red team",
                model=RedTeamState,
                empty={
                    "artifact": "",
                    "scope": [],
                    "activePlaybooks": [],
                    "critiques": [],
                    "scanQuery": "",
                    "scanHits": [],
                    "vulnerabilityChecklist": [],
                },
            ),
        ]
    )
