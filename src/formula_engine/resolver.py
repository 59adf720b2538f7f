from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from .errors import EvaluationAttemptError, UnsafeExpressionError
from .expressions import (
    ExpressionProgram,
    NameTranslation,
    _resolve_eval_functions,
    compile_expression,
    evaluate_program,
    extract_braced_names,
    substitute_braced_names,
)
from .variables import is_finite_number

logger = logging.getLogger(__name__)

VECTOR_TARGETS = re.compile(r"^\[(.*)\]$")
LINEAR_COEFFICIENT_THRESHOLD = 1e-10

_ATTEMPT_ERRORS = (
    UnsafeExpressionError,
    NameError,
    ArithmeticError,
    TypeError,
    ValueError,
    IndexError,
    KeyError,
)


@dataclass(slots=True)
class Resolution:
    values: dict[str, Any] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)
    passes: int = 0


@dataclass(slots=True, frozen=True)
class Equation:
    """One preprocessed ``lhs = rhs`` line in resolver-safe tokens."""

    source: str
    left: str
    right: str
    vector_targets: tuple[str, ...] = ()

    @property
    def is_vector(self) -> bool:
        return bool(self.vector_targets)


def split_equation(text: str) -> tuple[str, str] | None:
    """Split on the first assignment ``=``, ignoring ``==``, ``<=``, ``>=`` and ``!=``."""
    for position, char in enumerate(text):
        if char != "=":
            continue
        previous = text[position - 1] if position > 0 else ""
        following = text[position + 1] if position + 1 < len(text) else ""
        if previous in "<>=!" or following == "=":
            continue
        return text[:position].strip(), text[position + 1 :].strip()
    return None


def parse_equation(source: str, translation: NameTranslation) -> Equation | None:
    processed = substitute_braced_names(source, translation)
    sides = split_equation(processed)
    if sides is None:
        return None
    left, right = sides
    vector_match = VECTOR_TARGETS.match(left)
    if vector_match:
        targets = tuple(name.strip() for name in vector_match.group(1).split(",") if name.strip())
        if targets:
            return Equation(source=source, left=left, right=right, vector_targets=targets)
    return Equation(source=source, left=left, right=right)


class ExpressionResolver:
    """Fixed-point solver producing computed values from a list of equations.

    Each pass tries explicit overrides first and then every equation in order:
    vector destructuring ``[a, b] = rhs``, then ``v = rhs``, then ``rhs = v``.
    A target resolved by an earlier equation is not revisited by later ones in
    the same pass, so the first match in expression order wins. The loop stops
    when every target is resolved or a pass makes no progress; the remaining
    targets are reported as ``nan``.
    """

    def __init__(
        self,
        expressions: Iterable[str],
        computed: Iterable[str],
        variable_names: Iterable[str],
        overrides: Mapping[str, Callable[[dict[str, Any]], Any]] | None = None,
        extra_functions: dict[str, Callable[..., Any]] | None = None,
    ) -> None:
        self.expressions = list(expressions)
        self.computed = list(dict.fromkeys(computed))
        braced = [name for expression in self.expressions for name in extract_braced_names(expression)]
        self.translation = NameTranslation.build([*variable_names, *self.computed, *braced])
        self.overrides = {name: mapping for name, mapping in (overrides or {}).items() if name in self.computed}
        self._functions = _resolve_eval_functions(extra_functions)
        self._programs: dict[str, ExpressionProgram] = {}
        self.equations: list[Equation] = []
        for expression in self.expressions:
            equation = parse_equation(expression, self.translation)
            if equation is None:
                logger.warning("expression_without_assignment", extra={"expression": expression})
                continue
            self.equations.append(equation)
        self.last_resolution: Resolution | None = None
        self._warn_duplicate_definitions()

    def __call__(self, values: Mapping[str, Any]) -> dict[str, Any]:
        return self.resolve(values).values

    def resolve(self, values: Mapping[str, Any]) -> Resolution:
        computed = set(self.computed)
        scope: dict[str, Any] = {
            self.translation.translate(name): value
            for name, value in values.items()
            if name not in computed and value is not None
        }
        override_tokens = {self.translation.translate(name): mapping for name, mapping in self.overrides.items()}
        unresolved = [self.translation.translate(name) for name in self.computed]
        resolution = Resolution()
        max_passes = len(unresolved) + 1

        while unresolved and resolution.passes < max_passes:
            resolution.passes += 1
            progressed = False

            for token in list(unresolved):
                mapping = override_tokens.get(token)
                if mapping is None:
                    continue
                original_scope = {self.translation.original(key): value for key, value in scope.items()}
                try:
                    value = mapping(original_scope)
                except Exception as exc:  # user callback
                    logger.debug(
                        "override_attempt_failed",
                        extra={"variable_id": self.translation.original(token), "error": str(exc)},
                    )
                    continue
                self._assign(token, value, scope, unresolved, resolution)
                progressed = True

            for equation in self.equations:
                if not unresolved:
                    break
                if equation.is_vector:
                    progressed = self._try_vector(equation, scope, unresolved, override_tokens, resolution) or progressed
                else:
                    progressed = self._try_scalar(equation, scope, unresolved, override_tokens, resolution) or progressed

            if not progressed:
                break

        if unresolved:
            resolution.unresolved = [self.translation.original(token) for token in unresolved]
            for name in resolution.unresolved:
                resolution.values[name] = math.nan
            logger.warning(
                "resolution_incomplete",
                extra={"unresolved": resolution.unresolved, "passes": resolution.passes},
            )

        self.last_resolution = resolution
        return resolution

    def _try_vector(
        self,
        equation: Equation,
        scope: dict[str, Any],
        unresolved: list[str],
        override_tokens: Mapping[str, Any],
        resolution: Resolution,
    ) -> bool:
        pending = [
            token for token in equation.vector_targets if token in unresolved and token not in override_tokens
        ]
        if not pending:
            return False
        try:
            result = self._evaluate(equation.right, scope)
        except EvaluationAttemptError as exc:
            logger.debug("evaluation_attempt_failed", extra={"expression": equation.source, "error": str(exc)})
            return False
        if not isinstance(result, list) or len(result) != len(equation.vector_targets):
            return False
        if not all(is_finite_number(item) for item in result):
            return False
        for token, value in zip(equation.vector_targets, result, strict=True):
            if token in pending:
                self._assign(token, value, scope, unresolved, resolution)
        return True

    def _try_scalar(
        self,
        equation: Equation,
        scope: dict[str, Any],
        unresolved: list[str],
        override_tokens: Mapping[str, Any],
        resolution: Resolution,
    ) -> bool:
        for token in list(unresolved):
            if token in override_tokens:
                continue
            if equation.left == token:
                source = equation.right
            elif equation.right == token:
                source = equation.left
            else:
                continue
            try:
                value = self._evaluate(source, scope)
            except EvaluationAttemptError as exc:
                logger.debug(
                    "evaluation_attempt_failed",
                    extra={"variable_id": self.translation.original(token), "expression": equation.source, "error": str(exc)},
                )
                continue
            self._assign(token, value, scope, unresolved, resolution)
            return True
        return False

    def _assign(
        self,
        token: str,
        value: Any,
        scope: dict[str, Any],
        unresolved: list[str],
        resolution: Resolution,
    ) -> None:
        scope[token] = value
        unresolved.remove(token)
        resolution.values[self.translation.original(token)] = value

    def _evaluate(self, source: str, scope: dict[str, Any]) -> Any:
        try:
            program = self._programs.get(source)
            if program is None:
                program = compile_expression(source, functions=self._functions)
                self._programs[source] = program
            return evaluate_program(program, scope, functions=self._functions)
        except _ATTEMPT_ERRORS as exc:
            raise EvaluationAttemptError(str(exc)) from exc

    def _warn_duplicate_definitions(self) -> None:
        counts: Counter[str] = Counter()
        tokens = {self.translation.translate(name) for name in self.computed}
        for equation in self.equations:
            if equation.is_vector:
                counts.update(token for token in set(equation.vector_targets) if token in tokens)
            else:
                counts.update(token for token in {equation.left, equation.right} if token in tokens)
        for token, count in counts.items():
            if count > 1:
                logger.warning(
                    "duplicate_definition",
                    extra={"variable_id": self.translation.original(token), "expressions": count},
                )


def can_solve_for_variable(formula: str, solve_for: str) -> bool:
    return solve_for in extract_braced_names(formula) or solve_for in formula


def solve_single_formula(formula: str, values: Mapping[str, Any], solve_for: str) -> float | None:
    """Solve one formula for ``solve_for`` given every other value.

    The target is evaluated directly when it stands alone on either side.
    Otherwise the equation is treated as linear in the target: both sides are
    evaluated with the target at 0 and at 1 and the target is isolated from the
    net coefficient. Returns ``None`` when neither approach yields a finite number.
    """
    translation = NameTranslation.build([*values, solve_for, *extract_braced_names(formula)])
    target = translation.translate(solve_for)
    scope = {translation.translate(name): value for name, value in values.items() if name != solve_for}
    processed = substitute_braced_names(formula, translation)
    sides = split_equation(processed)
    if sides is not None and not can_solve_for_variable(formula, solve_for):
        return None
    functions = _resolve_eval_functions()

    def evaluate(source: str, local_scope: dict[str, Any]) -> Any:
        return evaluate_program(compile_expression(source, functions=functions), local_scope, functions=functions)

    try:
        if sides is None:
            return _finite_or_none(evaluate(processed, scope))
        left, right = sides
        if left == target:
            return _finite_or_none(evaluate(right, scope))
        if right == target:
            return _finite_or_none(evaluate(left, scope))

        left_at_zero = evaluate(left, {**scope, target: 0})
        right_at_zero = evaluate(right, {**scope, target: 0})
        left_at_one = evaluate(left, {**scope, target: 1})
        right_at_one = evaluate(right, {**scope, target: 1})
        coefficient = (left_at_one - left_at_zero) - (right_at_one - right_at_zero)
        if abs(coefficient) <= LINEAR_COEFFICIENT_THRESHOLD:
            return None
        return _finite_or_none((right_at_zero - left_at_zero) / coefficient)
    except _ATTEMPT_ERRORS as exc:
        logger.debug("single_formula_unsolved", extra={"formula": formula, "solve_for": solve_for, "error": str(exc)})
        return None


def _finite_or_none(value: Any) -> float | None:
    return float(value) if is_finite_number(value) else None
