from __future__ import annotations

import ast
import keyword
import math
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

from .errors import UnsafeExpressionError


def _dot(left: list[float], right: list[float]) -> float:
    if len(left) != len(right):
        raise ValueError(f"dot expects equal lengths, got {len(left)} and {len(right)}")
    return sum(a * b for a, b in zip(left, right, strict=True))


def _cross(left: list[float], right: list[float]) -> list[float]:
    if len(left) != 3 or len(right) != 3:
        raise ValueError("cross expects two 3-vectors")
    return [
        left[1] * right[2] - left[2] * right[1],
        left[2] * right[0] - left[0] * right[2],
        left[0] * right[1] - left[1] * right[0],
    ]


def _norm(vector: list[float]) -> float:
    return math.sqrt(sum(component * component for component in vector))


def _power(base: Any, exponent: Any) -> float:
    # float power raises OverflowError instead of building huge integers
    return float(base) ** float(exponent)


ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "max": max,
    "min": min,
    "round": round,
    "sqrt": math.sqrt,
    "exp": math.exp,
    "log": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "atan2": math.atan2,
    "sinh": math.sinh,
    "cosh": math.cosh,
    "tanh": math.tanh,
    "pow": math.pow,
    "hypot": math.hypot,
    "sum": sum,
    "len": len,
    "dot": _dot,
    "cross": _cross,
    "norm": _norm,
}

CONSTANTS: dict[str, float] = {
    "pi": math.pi,
    "e": math.e,
    "tau": math.tau,
    "inf": math.inf,
    "nan": math.nan,
}

CUSTOM_FUNCTIONS: dict[str, Callable[..., Any]] = {}
RESERVED_WORDS = {"mod", "to", "in", "and", "xor", "or", "not", "end"}
INVALID_NAME_CHARACTERS = re.compile(r"[^A-Za-z0-9_$]")
VALID_NAME_START = re.compile(r"^[A-Za-z_$]")

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.Subscript,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.Pow,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.Call,
)

_BINARY_OPERATORS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _power,
}

_COMPARE_OPERATORS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
}


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated expression tree that can be interpreted repeatedly."""

    source: str
    tree: ast.Expression


@dataclass(slots=True, frozen=True)
class NameTranslation:
    """Bidirectional map between original variable ids and evaluation-safe tokens."""

    forward: dict[str, str]
    reverse: dict[str, str]

    @classmethod
    def build(cls, names: Iterable[str]) -> NameTranslation:
        forward: dict[str, str] = {}
        reverse: dict[str, str] = {}
        # sorted so that collision suffixes do not depend on insertion order
        for name in sorted(set(names)):
            base = translate_variable_name(name)
            candidate = base
            suffix = 1
            while candidate in reverse:
                suffix += 1
                candidate = f"{base}_{suffix}"
            forward[name] = candidate
            reverse[candidate] = name
        return cls(forward=forward, reverse=reverse)

    def translate(self, name: str) -> str:
        return self.forward.get(name) or translate_variable_name(name)

    def original(self, token: str) -> str:
        return self.reverse.get(token, token)


class _ReferencedVariableVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.referenced_variables: set[str] = set()

    def visit_Call(self, node: ast.Call) -> Any:
        for argument in node.args:
            self.visit(argument)

    def visit_Name(self, node: ast.Name) -> Any:
        self.referenced_variables.add(node.id)


def translate_variable_name(variable_name: str) -> str:
    translated = INVALID_NAME_CHARACTERS.sub("_", variable_name)
    if not VALID_NAME_START.match(translated):
        translated = "_" + translated
    if (
        translated.lower() in RESERVED_WORDS
        or keyword.iskeyword(translated)
        or translated in ALLOWED_FUNCTIONS
        or translated in CONSTANTS
    ):
        translated = "var_" + translated
    return translated.replace("$", "_S_")


def iter_braced_names(text: str) -> Iterator[tuple[int, int, str]]:
    """Yield ``(start, end, name)`` for every top-level ``{name}`` in text.

    Braces nest, so ``{a_{11}}`` yields the single name ``a_{11}``.
    """
    depth = 0
    start = 0
    for position, char in enumerate(text):
        if char == "{":
            if depth == 0:
                start = position
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, position + 1, text[start + 1 : position]


def extract_braced_names(text: str) -> list[str]:
    return [name for _, _, name in iter_braced_names(text)]


def substitute_braced_names(text: str, translation: NameTranslation) -> str:
    pieces: list[str] = []
    cursor = 0
    for start, end, name in iter_braced_names(text):
        pieces.append(text[cursor:start])
        pieces.append(translation.translate(name))
        cursor = end
    pieces.append(text[cursor:])
    return "".join(pieces)


def _prepare_source(expression: str) -> str:
    return expression.strip().replace("^", "**")


def extract_expression_variables(expression: str) -> set[str]:
    tree = ast.parse(_prepare_source(expression), mode="eval")
    visitor = _ReferencedVariableVisitor()
    visitor.visit(tree)
    return visitor.referenced_variables - set(CONSTANTS)


def register_custom_function(name: str, function: Callable[..., Any]) -> None:
    CUSTOM_FUNCTIONS[name] = function


def _resolve_eval_functions(extra_functions: dict[str, Callable[..., Any]] | None = None) -> dict[str, Callable[..., Any]]:
    functions = {**ALLOWED_FUNCTIONS, **CUSTOM_FUNCTIONS}
    if extra_functions:
        functions.update(extra_functions)
    return functions


def validate_tree(
    tree: ast.AST,
    allowed_function_names: set[str],
    allowed_nodes: tuple[type, ...] = ALLOWED_NODES,
) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, allowed_nodes):
            raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in allowed_function_names:
                raise UnsafeExpressionError("Unsupported function call")
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float, str)):
            raise UnsafeExpressionError(f"Unsupported constant: {node.value!r}")


def compile_expression(
    expression: str,
    functions: dict[str, Callable[..., Any]] | None = None,
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> ExpressionProgram:
    resolved_functions = functions if functions is not None else _resolve_eval_functions(extra_functions)
    source = _prepare_source(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise UnsafeExpressionError(f"Invalid expression syntax: {expression!r}") from exc
    validate_tree(tree, set(resolved_functions))
    return ExpressionProgram(source=source, tree=tree)


def evaluate_program(
    program: ExpressionProgram,
    scope: dict[str, Any],
    functions: dict[str, Callable[..., Any]] | None = None,
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    resolved_functions = functions if functions is not None else _resolve_eval_functions(extra_functions)
    return interpret(program.tree.body, scope, resolved_functions)


def safe_eval(
    expression: str,
    scope: dict[str, Any],
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    functions = _resolve_eval_functions(extra_functions)
    program = compile_expression(expression, functions=functions)
    return evaluate_program(program, scope, functions=functions)


def interpret(node: ast.AST, scope: dict[str, Any], functions: dict[str, Callable[..., Any]]) -> Any:
    """Evaluate an already validated expression node against ``scope``."""
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in scope:
            return scope[node.id]
        if node.id in CONSTANTS:
            return CONSTANTS[node.id]
        raise NameError(f"name '{node.id}' is not defined")

    if isinstance(node, ast.BinOp):
        left = interpret(node.left, scope, functions)
        right = interpret(node.right, scope, functions)
        return _combine(_BINARY_OPERATORS[type(node.op)], left, right)

    if isinstance(node, ast.UnaryOp):
        operand = interpret(node.operand, scope, functions)
        if isinstance(node.op, ast.Not):
            return not operand
        sign = -1 if isinstance(node.op, ast.USub) else 1
        return _combine(operator.mul, sign, operand)

    if isinstance(node, ast.BoolOp):
        result: Any = None
        for value_node in node.values:
            result = interpret(value_node, scope, functions)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    if isinstance(node, ast.Compare):
        left = interpret(node.left, scope, functions)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = interpret(comparator, scope, functions)
            if not _COMPARE_OPERATORS[type(op)](left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if interpret(node.test, scope, functions):
            return interpret(node.body, scope, functions)
        return interpret(node.orelse, scope, functions)

    if isinstance(node, (ast.List, ast.Tuple)):
        return [interpret(element, scope, functions) for element in node.elts]

    if isinstance(node, ast.Dict):
        return {
            interpret(key, scope, functions): interpret(value, scope, functions)
            for key, value in zip(node.keys, node.values, strict=True)
            if key is not None
        }

    if isinstance(node, ast.Subscript):
        container = interpret(node.value, scope, functions)
        index = interpret(node.slice, scope, functions)
        if isinstance(container, list) and isinstance(index, float) and index.is_integer():
            index = int(index)
        return container[index]

    if isinstance(node, ast.Call):
        function = functions[node.func.id]  # type: ignore[attr-defined]
        return function(*(interpret(argument, scope, functions) for argument in node.args))

    raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")


def _combine(function: Callable[[Any, Any], Any], left: Any, right: Any) -> Any:
    if isinstance(left, str) or isinstance(right, str):
        raise TypeError("arithmetic on strings is not supported")
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            raise ValueError(f"vector length mismatch: {len(left)} != {len(right)}")
        return [_combine(function, a, b) for a, b in zip(left, right, strict=True)]
    if isinstance(left, list):
        return [_combine(function, a, right) for a in left]
    if isinstance(right, list):
        return [_combine(function, left, b) for b in right]
    result = function(left, right)
    if isinstance(result, complex):
        raise ValueError("expression produced a complex result")
    return result
