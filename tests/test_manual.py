import logging
import math

import pytest

from formula_engine.manual import (
    CollectedStep,
    ManualFormula,
    VariableAccessor,
    as_manual_formula,
    run_manual,
)
from formula_engine.variables import Variable


def _variables() -> dict[str, Variable]:
    return {
        "x": Variable(id="x", role="input", value=3),
        "a": Variable(id="a", role="computed"),
        "b": Variable(id="b", role="computed"),
    }


def test_accessor_reads_and_writes_through() -> None:
    variables = _variables()
    accessor = VariableAccessor(variables)

    assert accessor.get("nope") is None
    assert accessor.set("nope", 3) is False
    assert "nope" not in accessor

    assert accessor.set("x", 5) is True
    assert variables["x"].value == 5
    assert accessor.names() == ["x", "a", "b"]


def test_exception_in_one_function_does_not_block_other_targets(caplog) -> None:
    def compute_a(ctx) -> None:
        raise ZeroDivisionError("boom")

    def compute_b(ctx) -> None:
        ctx.vars.set("b", ctx.vars.get("x") * 2)

    with caplog.at_level(logging.WARNING, logger="formula_engine.manual"):
        run = run_manual(_variables(), [compute_a, compute_b])

    assert run.values["b"] == 6
    assert math.isnan(run.values["a"])
    assert run.failures == {"compute_a": "boom"}
    assert "manual_function_failed" in caplog.text


def test_writes_before_an_exception_are_kept() -> None:
    def partial(ctx) -> None:
        ctx.vars.set("a", 1)
        raise RuntimeError("late failure")

    run = run_manual(_variables(), [partial])
    assert run.values["a"] == 1


def test_point_collector_groups_by_graph() -> None:
    def plot(ctx) -> None:
        for x in range(2):
            ctx.collect("curve", {"x": x, "y": x * x})

    run = run_manual(_variables(), [plot])
    assert run.points == {"curve": [{"x": 0, "y": 0}, {"x": 1, "y": 1}]}


def test_steps_are_recorded_only_when_requested() -> None:
    def explain(ctx) -> None:
        ctx.step("start", {"x": ctx.vars.get("x")})
        ctx.step("per formula", formulas={"f1": {"description": "f1 view", "values": {"a": 1}}})

    assert run_manual(_variables(), [explain]).steps == []

    steps = run_manual(_variables(), [explain], record_steps=True).steps
    assert steps[0] == CollectedStep(index=0, description="start", values=[("x", 3)])
    assert steps[1].index == 1
    assert steps[1].target_formulas == {"f1": {"description": "f1 view", "values": {"a": 1}}}
    assert steps[0].to_dict()["values"] == [["x", 3]]


def test_returned_number_is_assigned_to_formula_target() -> None:
    formula = ManualFormula(
        function=lambda ctx: ctx.vars.get("x") + 1,
        expression="{b} = {x} + 1",
        formula_id="f1",
    )
    run = run_manual(_variables(), [formula])
    assert run.values["b"] == 4
    assert math.isnan(run.values["a"])


def test_list_values_are_reported_as_lists() -> None:
    def fill(ctx) -> None:
        ctx.vars.set("a", [1, 2, 3])

    run = run_manual(_variables(), [fill])
    assert run.values["a"] == [1, 2, 3]


def test_non_callable_entries_are_rejected() -> None:
    with pytest.raises(TypeError, match="must be callable"):
        as_manual_formula("not a function")


def test_returned_number_goes_to_only_computed_variable() -> None:
    variables = {
        "x": Variable(id="x", role="input", value=3),
        "y": Variable(id="y", role="computed"),
    }
    run = run_manual(variables, [lambda ctx: ctx.vars.get("x") * 4])
    assert run.values == {"y": 12}


def test_returned_number_without_target_is_logged(caplog) -> None:
    def ambiguous(ctx) -> float:
        return 5.0

    with caplog.at_level(logging.WARNING, logger="formula_engine.manual"):
        run = run_manual(_variables(), [ambiguous])

    assert math.isnan(run.values["a"])
    assert math.isnan(run.values["b"])
    assert "manual_return_ignored" in caplog.text
