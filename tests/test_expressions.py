import math

import pytest

from formula_engine.errors import UnsafeExpressionError
from formula_engine.expressions import (
    NameTranslation,
    compile_expression,
    evaluate_program,
    extract_braced_names,
    extract_expression_variables,
    register_custom_function,
    safe_eval,
    substitute_braced_names,
    translate_variable_name,
)


def test_safe_eval_blocks_unsafe_calls() -> None:
    with pytest.raises(UnsafeExpressionError):
        safe_eval("__import__('os').system('echo bad')", {})


def test_safe_eval_blocks_attribute_access_and_lambdas() -> None:
    with pytest.raises(UnsafeExpressionError):
        safe_eval("x.real", {"x": 1})
    with pytest.raises(UnsafeExpressionError):
        safe_eval("(lambda: 1)()", {})


def test_compile_expression_rejects_bad_syntax() -> None:
    with pytest.raises(UnsafeExpressionError, match="Invalid expression syntax"):
        compile_expression("1 +")


def test_compile_expression_reusable_program() -> None:
    program = compile_expression("base_price * quantity")
    assert evaluate_program(program, {"base_price": 9, "quantity": 2}) == 18
    assert evaluate_program(program, {"base_price": 11, "quantity": 3}) == 33


def test_safe_eval_supports_allowed_math_functions() -> None:
    result = safe_eval("round(sqrt(total), 2)", {"total": 20})
    assert result == 4.47


def test_caret_is_exponentiation_and_constants_resolve() -> None:
    assert safe_eval("x ^ 2", {"x": 3}) == 9
    assert safe_eval("2 * pi", {}) == pytest.approx(2 * math.pi)


def test_unknown_name_raises_name_error() -> None:
    with pytest.raises(NameError, match="missing"):
        safe_eval("missing + 1", {})


def test_custom_function_registration() -> None:
    register_custom_function("double", lambda value: value * 2)
    assert safe_eval("double(x)", {"x": 6}) == 12


def test_list_arithmetic_is_element_wise() -> None:
    assert safe_eval("[a, b] * 2", {"a": 1, "b": 2}) == [2, 4]
    assert safe_eval("u + v", {"u": [1, 2], "v": [10, 20]}) == [11, 22]
    with pytest.raises(ValueError, match="length mismatch"):
        safe_eval("[1, 2] + [1]", {})


def test_vector_helpers_and_indexing() -> None:
    assert safe_eval("dot(u, v)", {"u": [1, 2, 3], "v": [4, 5, 6]}) == 32
    assert safe_eval("cross(u, v)", {"u": [1, 0, 0], "v": [0, 1, 0]}) == [0, 0, 1]
    assert safe_eval("v[1.0]", {"v": [5, 6]}) == 6


def test_conditional_expression() -> None:
    assert safe_eval("1 if x > 0 else -1", {"x": -2}) == -1
    assert safe_eval("0 < x <= 3", {"x": 3}) is True


def test_extract_expression_variables_skips_functions_and_constants() -> None:
    assert extract_expression_variables("sqrt(x) + y * pi") == {"x", "y"}


def test_translate_variable_name_sanitizes_and_avoids_reserved_words() -> None:
    assert translate_variable_name("a-b") == "a_b"
    assert translate_variable_name("1x") == "_1x"
    assert translate_variable_name("in") == "var_in"
    assert translate_variable_name("And") == "var_And"
    assert translate_variable_name("lambda") == "var_lambda"
    assert translate_variable_name("sin") == "var_sin"
    assert translate_variable_name("$x") == "_S_x"


def test_name_translation_is_deterministic_and_invertible() -> None:
    names = ["a b", "a_b", "x", "in"]
    first = NameTranslation.build(names)
    second = NameTranslation.build(list(reversed(names)))

    assert first.forward == second.forward
    assert first.forward["a b"] != first.forward["a_b"]
    for name in names:
        assert first.original(first.translate(name)) == name


def test_braced_names_nest() -> None:
    text = "{a_{11}} + {x}"
    assert extract_braced_names(text) == ["a_{11}", "x"]

    translation = NameTranslation.build(["a_{11}", "x"])
    assert substitute_braced_names(text, translation) == "a__11_ + x"


def test_power_is_float_and_overflow_raises() -> None:
    assert safe_eval("2 ** 10", {}) == 1024.0
    with pytest.raises(OverflowError):
        safe_eval("9 ** 9 ** 9", {})
    with pytest.raises(ValueError, match="complex"):
        safe_eval("(-8) ** 0.5", {})


def test_string_arithmetic_is_rejected() -> None:
    with pytest.raises(TypeError, match="strings"):
        safe_eval("'x' * 10 ** 10", {})
    with pytest.raises(TypeError, match="strings"):
        safe_eval("-label", {"label": "M"})
    assert safe_eval("size == 'M'", {"size": "M"}) is True
