from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterable, Mapping

from .errors import ConfigurationError
from .generation import ExternalFunctionAdapter, GeneratedFunction, GenerationRequest
from .manual import CollectedStep, ManualContext, ManualFormula, as_manual_formula, run_manual
from .registry import VariableRegistry
from .resolver import ExpressionResolver
from .variables import Variable, is_valid_result

Evaluator = Callable[[dict[str, Any]], Mapping[str, Any]]

STRATEGIES = ("symbolic", "manual", "external")
STRATEGY_ALIASES = {"symbolic-algebra": "symbolic", "llm": "external"}

logger = logging.getLogger(__name__)


def normalize_strategy(name: str) -> str:
    strategy = str(name or "").strip().lower()
    strategy = STRATEGY_ALIASES.get(strategy, strategy)
    if strategy not in STRATEGIES:
        raise ConfigurationError(f"unsupported computation strategy: {name}")
    return strategy


class ComputationEngine:
    """Owns the active evaluator and the recompute cycle for one registry.

    Exactly one strategy produces the evaluator at a time. ``recompute`` is
    guarded by ``recomputing`` so that writes made while a pass is running do
    not start a nested pass.
    """

    def __init__(
        self,
        registry: VariableRegistry | None = None,
        strategy: str = "symbolic",
        step_mode: bool = False,
        adapter: ExternalFunctionAdapter | None = None,
    ) -> None:
        self.registry = registry if registry is not None else VariableRegistry()
        if step_mode:
            self.registry.step_mode = True
        self.strategy = normalize_strategy(strategy)
        self.adapter = adapter if adapter is not None else ExternalFunctionAdapter()
        self.recomputing = False
        self.expressions: list[str] = []
        self.manual_functions: list[ManualFormula] = []
        self.last_points: dict[str, list[dict[str, Any]]] = {}
        self.last_steps: list[CollectedStep] = []
        self.last_failures: dict[str, str] = {}
        self.last_step_failures: dict[str, str] = {}
        self.last_generated_code: str | None = None
        self._generated: GeneratedFunction | None = None
        self._evaluator: Evaluator | None = None
        self.registry.attach(self)

    @property
    def step_mode(self) -> bool:
        return self.registry.step_mode

    @property
    def evaluator(self) -> Evaluator | None:
        return self._evaluator

    def set_computation(
        self,
        expressions: Iterable[str],
        manual_functions: Iterable[ManualFormula | Callable[[ManualContext], Any]] | None = None,
    ) -> None:
        expressions = [str(expression) for expression in expressions if str(expression).strip()]
        functions = [as_manual_formula(function) for function in manual_functions or []]

        if not self.registry.ids_with_role("computed"):
            raise ConfigurationError("no computed variables are defined")
        if self.strategy == "manual" and not functions:
            raise ConfigurationError("the manual strategy needs at least one manual function")
        if self.strategy != "manual" and not expressions:
            raise ConfigurationError(f"the {self.strategy} strategy needs at least one expression")

        self.expressions = expressions
        self.manual_functions = functions
        self._generated = None
        self._evaluator = self._build_evaluator()
        logger.info(
            "computation_configured",
            extra={"strategy": self.strategy, "expressions": len(expressions), "manual_functions": len(functions)},
        )
        if not self.step_mode:
            self.recompute()

    def set_strategy(self, name: str) -> None:
        self.strategy = normalize_strategy(name)
        logger.info("strategy_changed", extra={"strategy": self.strategy})
        self.rederive()

    def rederive(self) -> None:
        if not self.registry.ids_with_role("computed"):
            self._evaluator = None
            self.last_generated_code = None
            logger.info("evaluator_cleared", extra={"reason": "no_computed_variables"})
            return
        self._evaluator = self._build_evaluator()
        self.recompute()

    def generation_request(self) -> GenerationRequest:
        return GenerationRequest(
            formula_text="\n".join(self.expressions),
            input_variable_names=tuple(self.registry.ids_with_role("input")),
            target_variable_names=tuple(self.registry.ids_with_role("computed")),
        )

    def install_generated_function(self, text: str) -> GeneratedFunction:
        generated = self.adapter.activate(text, self.generation_request())
        self._install(generated)
        return generated

    def request_generated_function(self) -> GeneratedFunction:
        generated = self.adapter.request_evaluator(self.generation_request())
        self._install(generated)
        return generated

    def recompute(self) -> bool:
        if self.recomputing:
            return False
        evaluator = self._evaluator
        if evaluator is None:
            return False

        changed: dict[str, Any] = {}
        self.recomputing = True
        try:
            results = evaluator(self.registry.values()) or {}
            for variable_id in self.registry.ids_with_role("computed"):
                result = results.get(variable_id)
                if is_valid_result(result):
                    value = list(result) if isinstance(result, tuple) else copy.deepcopy(result)
                    self.registry.store_computed(variable_id, value)
                    changed[variable_id] = value
                else:
                    self.registry.mark_errored(variable_id)
        except Exception:  # evaluators run user code
            logger.exception("recompute_failed", extra={"strategy": self.strategy})
            for variable_id in self.registry.ids_with_role("computed"):
                self.registry.mark_errored(variable_id)
            return False
        finally:
            self.recomputing = False

        self.registry.notify(changed)
        return True

    def sample_steps(self) -> list[CollectedStep]:
        """Run the manual functions with step recording on copies of the variables."""
        if not self.manual_functions:
            self.last_steps = []
            self.last_step_failures = {}
            return []
        run = run_manual(self._working_copy(self.registry.values()), self.manual_functions, record_steps=True)
        self.last_steps = run.steps
        self.last_step_failures = run.failures
        logger.debug("steps_sampled", extra={"steps": len(run.steps)})
        return run.steps

    def debug_state(self) -> dict[str, Any]:
        return {
            "variables": [
                {"id": variable_id, "value": variable.to_dict()["value"], "role": variable.role}
                for variable_id, variable in self.registry.get_variables().items()
            ],
            "strategy": self.strategy,
            "stepMode": self.step_mode,
            "hasFunction": self._evaluator is not None,
            "lastGeneratedCode": self.last_generated_code,
            "expressions": list(self.expressions),
            "manualFunctions": [formula.label for formula in self.manual_functions],
        }

    def reset(self) -> None:
        self.registry.reset()
        self.expressions = []
        self.manual_functions = []
        self._generated = None
        self._evaluator = None
        self.last_generated_code = None
        self.last_points = {}
        self.last_steps = []

    def _install(self, generated: GeneratedFunction) -> None:
        self._generated = generated
        self.last_generated_code = generated.source
        if self.strategy == "external":
            self._evaluator = generated
            if not self.step_mode:
                self.recompute()

    def _build_evaluator(self) -> Evaluator | None:
        if self.strategy == "symbolic":
            if not self.expressions:
                logger.warning("strategy_without_definitions", extra={"strategy": self.strategy})
                return None
            computed = self.registry.ids_with_role("computed")
            overrides = {
                variable_id: variable.mapping
                for variable_id, variable in self.registry.items()
                if variable.role == "computed" and variable.mapping is not None
            }
            return ExpressionResolver(
                self.expressions,
                computed,
                [variable_id for variable_id, _ in self.registry.items()],
                overrides=overrides,
            )
        if self.strategy == "manual":
            if not self.manual_functions:
                logger.warning("strategy_without_definitions", extra={"strategy": self.strategy})
                return None
            return self._evaluate_manual
        return self._generated

    def _evaluate_manual(self, values: dict[str, Any]) -> dict[str, Any]:
        run = run_manual(self._working_copy(values), self.manual_functions)
        self.last_points = run.points
        self.last_failures = run.failures
        return run.values

    def _working_copy(self, values: Mapping[str, Any]) -> dict[str, Variable]:
        variables: dict[str, Variable] = {}
        for variable_id, variable in self.registry.items():
            clone = variable.snapshot()
            if variable_id in values:
                clone.value = copy.deepcopy(values[variable_id])
            variables[variable_id] = clone
        return variables
