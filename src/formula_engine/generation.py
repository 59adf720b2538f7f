from __future__ import annotations

import ast
import logging
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import requests

from .errors import ConfigurationError, GeneratedCodeInvalidError, GenerationRequestError, UnsafeExpressionError
from .expressions import (
    ALLOWED_NODES,
    _BINARY_OPERATORS,
    _combine,
    _resolve_eval_functions,
    interpret,
    validate_tree,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
GENERATOR_URL_ENV = "FORMULA_ENGINE_GENERATOR_URL"
GENERATOR_TIMEOUT_ENV = "FORMULA_ENGINE_GENERATOR_TIMEOUT"
LOOKUP_FUNCTION = "_lookup"

SYSTEM_INSTRUCTION = (
    "You are a precise code generator that writes a single Python function named "
    "'evaluate' taking one parameter, a dict of input variable values, and returning "
    "a dict that maps every computed variable name to its value. Use only "
    "assignments to local names, if/elif/else, arithmetic, comparisons and the math "
    "functions sqrt, exp, log, sin, cos, tan, abs, min and max. Read inputs as "
    "variables[\"name\"]. Do not import modules, define classes, loop or call "
    "methods. Return ONLY the function code without explanation or markdown."
)

GENERATED_NODES = (*ALLOWED_NODES, ast.Dict)
_INFERRED_TARGET = re.compile(r"^\s*([A-Za-z])\s*=")


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    formula_text: str
    input_variable_names: tuple[str, ...]
    target_variable_names: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.formula_text or not self.formula_text.strip():
            raise ConfigurationError("cannot generate a function from an empty formula")
        if not self.target_variable_names:
            raise ConfigurationError("cannot generate a function without computed variables")
        object.__setattr__(self, "input_variable_names", tuple(self.input_variable_names))
        object.__setattr__(self, "target_variable_names", tuple(self.target_variable_names))

    def to_payload(self) -> dict[str, Any]:
        return {
            "formulaText": self.formula_text,
            "inputVariableNames": list(self.input_variable_names),
            "targetVariableNames": list(self.target_variable_names),
            "systemInstruction": SYSTEM_INSTRUCTION,
            "prompt": self.build_prompt(),
        }

    def build_prompt(self) -> str:
        return "\n".join(
            [
                f"Create a Python function that evaluates this formula: {self.formula_text}",
                f"Input variables: {', '.join(self.input_variable_names)}",
                f"Computed variables to calculate: {', '.join(self.target_variable_names)}",
                "",
                "Requirements:",
                "1. Function must be named 'evaluate'",
                "2. Takes a single parameter 'variables' containing input variable values as numbers",
                "3. Must use ONLY the specified input variables",
                "4. Returns a dict with a value for every computed variable",
                "5. Return ONLY the function code",
            ]
        )


def _key_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"[\"']?{re.escape(name)}[\"']?\s*:", re.IGNORECASE)


def _read_pattern(name: str) -> re.Pattern[str]:
    quoted = rf"[\"']{re.escape(name)}[\"']"
    return re.compile(rf"\[\s*{quoted}\s*\]|\.get\(\s*{quoted}|\.{re.escape(name)}\b")


def validate_generated_code(text: str, request: GenerationRequest) -> list[str]:
    """Check generated text before activation and return unused input names.

    The text must define ``evaluate`` and bind every target with a key-like
    pattern; a single-letter left-hand side of the formula also satisfies the
    binding check. Unused inputs only produce a warning.
    """
    if "def evaluate" not in text:
        raise GeneratedCodeInvalidError("generated code does not define an evaluate function")

    missing = [name for name in request.target_variable_names if not _key_pattern(name).search(text)]
    inferred = _INFERRED_TARGET.match(request.formula_text)
    if missing and not (inferred and _key_pattern(inferred.group(1)).search(text)):
        raise GeneratedCodeInvalidError(f"generated code is missing computed variables: {', '.join(missing)}")

    unused = [name for name in request.input_variable_names if not _read_pattern(name).search(text)]
    for name in unused:
        logger.warning("unused_input_variable", extra={"variable_id": name})
    return unused


class _ParameterReads(ast.NodeTransformer):
    """Rewrites ``p["x"]``, ``p.get("x", d)`` and ``p.x`` into ``_lookup("x"[, d])`` calls."""

    def __init__(self, parameter: str) -> None:
        self.parameter = parameter

    def _is_parameter(self, node: ast.AST) -> bool:
        return isinstance(node, ast.Name) and node.id == self.parameter

    def _lookup(self, node: ast.AST, arguments: list[ast.expr]) -> ast.Call:
        call = ast.Call(func=ast.Name(id=LOOKUP_FUNCTION, ctx=ast.Load()), args=arguments, keywords=[])
        return ast.copy_location(call, node)

    def visit_Subscript(self, node: ast.Subscript) -> ast.AST:
        if self._is_parameter(node.value):
            if not (isinstance(node.slice, ast.Constant) and isinstance(node.slice.value, str)):
                raise GeneratedCodeInvalidError("inputs must be read with a string key")
            return self._lookup(node, [node.slice])
        return self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> ast.AST:
        function = node.func
        if isinstance(function, ast.Attribute) and self._is_parameter(function.value):
            if function.attr != "get" or node.keywords or not 1 <= len(node.args) <= 2:
                raise GeneratedCodeInvalidError(f"unsupported input method: {function.attr}")
            key = node.args[0]
            if not (isinstance(key, ast.Constant) and isinstance(key.value, str)):
                raise GeneratedCodeInvalidError("inputs must be read with a string key")
            return self._lookup(node, [self.visit(argument) for argument in node.args])
        return self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        if self._is_parameter(node.value):
            return self._lookup(node, [ast.Constant(value=node.attr)])
        raise GeneratedCodeInvalidError("attribute access is not allowed")


@dataclass(slots=True)
class GeneratedFunction:
    """Sandboxed ``evaluate`` routine parsed from generated text.

    Only a small statement subset is accepted and the body is interpreted node
    by node, so generated text never reaches ``exec``.
    """

    source: str
    parameter: str
    body: list[ast.stmt]
    target_names: tuple[str, ...] = ()
    functions: dict[str, Callable[..., Any]] = field(default_factory=_resolve_eval_functions, repr=False)

    @classmethod
    def parse(cls, text: str, target_names: tuple[str, ...] | list[str] = ()) -> GeneratedFunction:
        try:
            module = ast.parse(text.strip())
        except SyntaxError as exc:
            raise GeneratedCodeInvalidError(f"generated code is not valid Python: {exc.msg}") from exc

        statements = [statement for statement in module.body if not _is_docstring(statement)]
        if len(statements) != 1 or not isinstance(statements[0], ast.FunctionDef) or statements[0].name != "evaluate":
            raise GeneratedCodeInvalidError("generated code must contain exactly one function named evaluate")
        definition = statements[0]
        arguments = definition.args
        if (
            definition.decorator_list
            or len(arguments.args) != 1
            or arguments.posonlyargs
            or arguments.kwonlyargs
            or arguments.vararg
            or arguments.kwarg
            or arguments.defaults
        ):
            raise GeneratedCodeInvalidError("evaluate must take exactly one parameter")

        parameter = arguments.args[0].arg
        rewriter = _ParameterReads(parameter)
        body = [rewriter.visit(statement) for statement in definition.body]
        generated = cls(source=text, parameter=parameter, body=body, target_names=tuple(target_names))
        allowed_functions = {*generated.functions, LOOKUP_FUNCTION}
        for statement in body:
            generated._validate_statement(statement, allowed_functions)
        return generated

    def __call__(self, values: Mapping[str, Any]) -> dict[str, Any]:
        def lookup(name: str, *default: Any) -> Any:
            if name in values:
                return values[name]
            if default:
                return default[0]
            raise KeyError(name)

        functions = {**self.functions, LOOKUP_FUNCTION: lookup}
        try:
            returned, result = self._execute(self.body, {}, functions)
        except (ArithmeticError, ValueError, TypeError, KeyError, IndexError, NameError) as exc:
            logger.debug("generated_function_failed", extra={"error": str(exc)})
            return {name: math.nan for name in self.target_names}
        if not returned or not isinstance(result, dict):
            return {name: math.nan for name in self.target_names}
        return {str(key): value for key, value in result.items()}

    def _execute(
        self, statements: list[ast.stmt], scope: dict[str, Any], functions: dict[str, Callable[..., Any]]
    ) -> tuple[bool, Any]:
        for statement in statements:
            if isinstance(statement, ast.Return):
                return True, interpret(statement.value, scope, functions) if statement.value is not None else None
            if isinstance(statement, ast.Assign):
                scope[statement.targets[0].id] = interpret(statement.value, scope, functions)  # type: ignore[attr-defined]
            elif isinstance(statement, ast.AugAssign):
                name = statement.target.id  # type: ignore[attr-defined]
                if name not in scope:
                    raise NameError(f"name '{name}' is not defined")
                operand = interpret(statement.value, scope, functions)
                scope[name] = _combine(_BINARY_OPERATORS[type(statement.op)], scope[name], operand)
            elif isinstance(statement, ast.If):
                branch = statement.body if interpret(statement.test, scope, functions) else statement.orelse
                returned, result = self._execute(branch, scope, functions)
                if returned:
                    return True, result
        return False, None

    def _validate_statement(self, statement: ast.stmt, allowed_functions: set[str]) -> None:
        if isinstance(statement, ast.Pass) or _is_docstring(statement):
            return
        if isinstance(statement, ast.Assign):
            if len(statement.targets) != 1 or not isinstance(statement.targets[0], ast.Name):
                raise GeneratedCodeInvalidError("only assignment to a single local name is allowed")
            self._check_target(statement.targets[0].id)
            self._validate_expression(statement.value, allowed_functions)
        elif isinstance(statement, ast.AugAssign):
            if not isinstance(statement.target, ast.Name) or type(statement.op) not in _BINARY_OPERATORS:
                raise GeneratedCodeInvalidError("unsupported augmented assignment")
            self._check_target(statement.target.id)
            self._validate_expression(statement.value, allowed_functions)
        elif isinstance(statement, ast.If):
            self._validate_expression(statement.test, allowed_functions)
            for child in (*statement.body, *statement.orelse):
                self._validate_statement(child, allowed_functions)
        elif isinstance(statement, ast.Return):
            if statement.value is not None:
                self._validate_expression(statement.value, allowed_functions)
        else:
            raise GeneratedCodeInvalidError(f"unsupported statement: {type(statement).__name__}")

    def _validate_expression(self, node: ast.expr, allowed_functions: set[str]) -> None:
        try:
            validate_tree(node, allowed_functions, GENERATED_NODES)
        except UnsafeExpressionError as exc:
            raise GeneratedCodeInvalidError(str(exc)) from exc
        for child in ast.walk(node):
            if isinstance(child, ast.Name) and child.id == self.parameter:
                raise GeneratedCodeInvalidError(f"{self.parameter} may only be read by key")
            if isinstance(child, ast.Dict) and any(key is None for key in child.keys):
                raise GeneratedCodeInvalidError("dict unpacking is not allowed")

    def _check_target(self, name: str) -> None:
        if name == self.parameter or name == LOOKUP_FUNCTION:
            raise GeneratedCodeInvalidError(f"cannot assign to {name}")


def _is_docstring(statement: ast.stmt) -> bool:
    return (
        isinstance(statement, ast.Expr)
        and isinstance(statement.value, ast.Constant)
        and isinstance(statement.value.value, str)
    )


class GenerationClient:
    """HTTP client for the remote code-generation service."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, session: Any = None) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GenerationClient | None:
        environ = os.environ if environ is None else environ
        base_url = environ.get(GENERATOR_URL_ENV, "").strip()
        if not base_url:
            return None
        raw_timeout = environ.get(GENERATOR_TIMEOUT_ENV, "").strip()
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT_SECONDS
        except ValueError as exc:
            raise ConfigurationError(f"{GENERATOR_TIMEOUT_ENV} must be a number of seconds") from exc
        return cls(base_url, timeout=timeout)

    def generate(self, request: GenerationRequest) -> str:
        logger.info(
            "generation_requested",
            extra={"url": self.base_url, "targets": list(request.target_variable_names)},
        )
        try:
            response = self.session.post(self.base_url, json=request.to_payload(), timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise GenerationRequestError(f"generation request failed: {exc}") from exc
        except ValueError as exc:
            raise GenerationRequestError("generation service returned a malformed body") from exc

        text = body.get("generatedFunctionText") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise GenerationRequestError("generation service response has no generatedFunctionText")
        return text.strip()


class ExternalFunctionAdapter:
    def __init__(self, client: GenerationClient | None = None) -> None:
        self.client = client

    def request_evaluator(self, request: GenerationRequest) -> GeneratedFunction:
        if self.client is None:
            raise GenerationRequestError("no generation service is configured")
        text = self.client.generate(request)
        return self.activate(text, request)

    def activate(self, text: str, request: GenerationRequest) -> GeneratedFunction:
        validate_generated_code(text, request)
        generated = GeneratedFunction.parse(text, target_names=request.target_variable_names)
        logger.info("generated_function_activated", extra={"targets": list(request.target_variable_names)})
        return generated
