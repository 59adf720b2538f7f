from __future__ import annotations

import logging
from typing import Any, Mapping

from .engine import ComputationEngine
from .manual import CollectedStep

logger = logging.getLogger(__name__)


class StepPlayer:
    """Walks the steps recorded by the manual functions.

    Moving to a step stages its recorded values in the registry without
    recomputing, then notifies subscribers with the staged values.
    """

    def __init__(self, engine: ComputationEngine) -> None:
        self.engine = engine
        self.steps: list[CollectedStep] = []
        self.index = 0
        self.error: str | None = None

    @property
    def current_step(self) -> CollectedStep | None:
        if not self.steps:
            return None
        return self.steps[self.index]

    def refresh(self) -> list[CollectedStep]:
        self.steps = self.engine.sample_steps()
        failures = self.engine.last_step_failures
        self.error = "; ".join(f"{label}: {message}" for label, message in failures.items()) or None
        self.index = 0
        if self.error:
            logger.warning("step_sampling_failed", extra={"error": self.error})
        self._apply()
        return self.steps

    def next_step(self) -> CollectedStep | None:
        return self.go_to_step(self.index + 1)

    def prev_step(self) -> CollectedStep | None:
        return self.go_to_step(self.index - 1)

    def go_to_start(self) -> CollectedStep | None:
        return self.go_to_step(0)

    def go_to_end(self) -> CollectedStep | None:
        return self.go_to_step(len(self.steps) - 1)

    def go_to_step(self, index: int) -> CollectedStep | None:
        if not self.steps:
            return None
        self.index = max(0, min(index, len(self.steps) - 1))
        self._apply()
        return self.current_step

    def active_variables(self) -> dict[str, set[str]]:
        step = self.current_step
        if step is None:
            return {}
        if not step.target_formulas:
            return {"": {variable_id for variable_id, _ in step.values}}
        return {
            formula_id: set(_value_pairs(view.get("values")))
            for formula_id, view in step.target_formulas.items()
        }

    def _apply(self) -> None:
        step = self.current_step
        if step is None:
            return
        staged: dict[str, Any] = {}
        for variable_id, value in step.values:
            if self.engine.registry.set_value_in_step_mode(variable_id, value):
                staged[variable_id] = value
        self.engine.registry.notify(staged)


def _value_pairs(values: Mapping[str, Any] | list | None) -> dict[str, Any]:
    if values is None:
        return {}
    if isinstance(values, Mapping):
        return dict(values)
    return {variable_id: value for variable_id, value in values}
