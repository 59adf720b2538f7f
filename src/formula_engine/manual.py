from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from .expressions import extract_braced_names
from .variables import Variable, is_finite_number

logger = logging.getLogger(__name__)


class VariableAccessor:
    """Read/write view over variables keyed by id.

    Reads of unknown ids return ``None``. Writes go straight to the underlying
    variable; writes to unknown ids are ignored.
    """

    def __init__(self, variables: Mapping[str, Variable]) -> None:
        self._variables = variables

    def get(self, name: str) -> Any:
        variable = self._variables.get(name)
        return variable.value if variable is not None else None

    def set(self, name: str, value: Any) -> bool:
        variable = self._variables.get(name)
        if variable is None:
            return False
        variable.value = value
        return True

    def names(self) -> list[str]:
        return list(self._variables)

    def __contains__(self, name: object) -> bool:
        return name in self._variables


class PointCollector:
    def __init__(self) -> None:
        self.points: dict[str, list[dict[str, Any]]] = {}

    def collect(self, graph_id: str, point: Mapping[str, Any]) -> None:
        self.points.setdefault(graph_id, []).append(dict(point))


@dataclass(slots=True)
class CollectedStep:
    index: int
    description: str
    values: list[tuple[str, Any]] = field(default_factory=list)
    expression: str | None = None
    target_formulas: dict[str, dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "description": self.description,
            "values": [[variable_id, value] for variable_id, value in self.values],
            "expression": self.expression,
            "targetFormulas": self.target_formulas,
        }


class StepRecorder:
    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.steps: list[CollectedStep] = []

    def step(
        self,
        description: str,
        values: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
        expression: str | None = None,
        formulas: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        if not self.enabled:
            return
        pairs = list(values.items()) if isinstance(values, Mapping) else list(values or [])
        self.steps.append(
            CollectedStep(
                index=len(self.steps),
                description=description,
                values=pairs,
                expression=expression,
                target_formulas={key: dict(view) for key, view in formulas.items()} if formulas else None,
            )
        )


@dataclass(slots=True)
class ManualContext:
    vars: VariableAccessor
    collect: Callable[[str, Mapping[str, Any]], None]
    step: Callable[..., None]


@dataclass(slots=True)
class ManualFormula:
    """A user function plus the formula it belongs to.

    When the function returns a number instead of writing through ``vars``, the
    value goes to the first computed variable referenced as ``{id}`` in
    ``expression``, or to the only computed variable when there is no
    expression.
    """

    function: Callable[[ManualContext], Any]
    expression: str | None = None
    formula_id: str | None = None

    @property
    def label(self) -> str:
        return self.formula_id or getattr(self.function, "__name__", "manual")


@dataclass(slots=True)
class ManualRun:
    values: dict[str, Any] = field(default_factory=dict)
    points: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    steps: list[CollectedStep] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


def as_manual_formula(entry: ManualFormula | Callable[[ManualContext], Any]) -> ManualFormula:
    if isinstance(entry, ManualFormula):
        return entry
    if not callable(entry):
        raise TypeError(f"manual function must be callable, got {type(entry).__name__}")
    return ManualFormula(function=entry)


def run_manual(
    variables: Mapping[str, Variable],
    functions: Iterable[ManualFormula | Callable[[ManualContext], Any]],
    record_steps: bool = False,
) -> ManualRun:
    accessor = VariableAccessor(variables)
    collector = PointCollector()
    recorder = StepRecorder(enabled=record_steps)
    context = ManualContext(vars=accessor, collect=collector.collect, step=recorder.step)
    run = ManualRun(points=collector.points, steps=recorder.steps)

    for entry in functions:
        formula = as_manual_formula(entry)
        try:
            returned = formula.function(context)
        except Exception as exc:  # user code
            logger.warning("manual_function_failed", extra={"formula_id": formula.label, "error": str(exc)})
            run.failures[formula.label] = str(exc)
            continue
        if is_finite_number(returned):
            target = _return_target(formula, variables)
            if target is None:
                logger.warning("manual_return_ignored", extra={"formula_id": formula.label, "value": returned})
            else:
                accessor.set(target, returned)

    for variable_id, variable in variables.items():
        if variable.role != "computed":
            continue
        if isinstance(variable.value, list):
            run.values[variable_id] = list(variable.value)
        elif is_finite_number(variable.value):
            run.values[variable_id] = variable.value
        else:
            run.values[variable_id] = math.nan
    return run


def _return_target(formula: ManualFormula, variables: Mapping[str, Variable]) -> str | None:
    if formula.expression:
        return _first_computed_reference(formula.expression, variables)
    computed = [variable_id for variable_id, variable in variables.items() if variable.role == "computed"]
    return computed[0] if len(computed) == 1 else None


def _first_computed_reference(expression: str, variables: Mapping[str, Variable]) -> str | None:
    for name in extract_braced_names(expression):
        variable = variables.get(name)
        if variable is not None and variable.role == "computed":
            return name
    return None
