from __future__ import annotations

import logging
from typing import Any, Mapping

from .engine import ComputationEngine
from .errors import ConfigurationError
from .generation import ExternalFunctionAdapter
from .manual import ManualFormula
from .registry import VariableRegistry
from .variables import Variable, normalize_variable

MODES = {"normal", "step"}

logger = logging.getLogger(__name__)


def normalize_environment(config: Any) -> dict[str, Any]:
    """Validate an environment mapping and normalize its variables and formulas."""
    if not isinstance(config, Mapping):
        raise ConfigurationError("environment must be a mapping")

    raw_variables = config.get("variables") or {}
    if not isinstance(raw_variables, Mapping):
        raise ConfigurationError("environment variables must be a mapping of id to definition")
    variables: dict[str, Variable] = {
        str(variable_id): normalize_variable(str(variable_id), definition)
        for variable_id, definition in raw_variables.items()
    }

    computation = config.get("computation") or {}
    if not isinstance(computation, Mapping):
        raise ConfigurationError("environment computation must be a mapping")

    mode = str(computation.get("mode") or "normal").strip().lower()
    if mode not in MODES:
        raise ConfigurationError(f"unsupported computation mode: {computation.get('mode')}")

    expressions = computation.get("expressions") or []
    if isinstance(expressions, str):
        expressions = [expressions]
    if not all(isinstance(expression, str) for expression in expressions):
        raise ConfigurationError("computation expressions must be strings")

    manual_functions = _manual_functions(computation.get("manual"), config.get("formulas") or [])

    return {
        "variables": variables,
        "strategy": computation.get("engine") or "symbolic",
        "step_mode": mode == "step",
        "expressions": list(expressions),
        "manual_functions": manual_functions,
    }


def _manual_functions(raw_manual: Any, formulas: Any) -> list[ManualFormula]:
    functions: list[ManualFormula] = []
    if raw_manual is not None:
        entries = raw_manual if isinstance(raw_manual, (list, tuple)) else [raw_manual]
        for entry in entries:
            if not callable(entry) and not isinstance(entry, ManualFormula):
                raise ConfigurationError("computation manual entries must be callables")
            functions.append(entry if isinstance(entry, ManualFormula) else ManualFormula(function=entry))

    if not isinstance(formulas, (list, tuple)):
        raise ConfigurationError("environment formulas must be a list")
    for position, formula in enumerate(formulas):
        if not isinstance(formula, Mapping):
            raise ConfigurationError(f"formula {position} must be a mapping")
        function = formula.get("manual")
        if function is None:
            continue
        if not callable(function):
            raise ConfigurationError(f"formula {position} manual entry must be callable")
        functions.append(
            ManualFormula(
                function=function,
                expression=formula.get("expression"),
                formula_id=formula.get("id") or f"formula-{position}",
            )
        )
    return functions


def build_engine(config: Any, adapter: ExternalFunctionAdapter | None = None) -> ComputationEngine:
    environment = normalize_environment(config)
    registry = VariableRegistry(step_mode=environment["step_mode"])
    engine = ComputationEngine(registry, strategy=environment["strategy"], adapter=adapter)

    with registry.initializing():
        for variable_id, variable in environment["variables"].items():
            registry.add_variable(variable_id, variable)
        registry.resolve_key_relationships()
        registry.resolve_member_of_relationships()

    engine.set_computation(environment["expressions"], environment["manual_functions"])
    logger.info(
        "environment_loaded",
        extra={
            "variables": len(registry),
            "strategy": engine.strategy,
            "step_mode": engine.step_mode,
        },
    )
    return engine
