import logging

from formula_engine.engine import ComputationEngine
from formula_engine.stepping import StepPlayer


def explain(ctx) -> None:
    ctx.step("start", {"y": 0})
    ctx.vars.set("y", ctx.vars.get("x") * 2)
    ctx.step("doubled", {"y": ctx.vars.get("y")})
    ctx.step(
        "per formula",
        formulas={"f1": {"description": "y from x", "values": {"x": ctx.vars.get("x"), "y": ctx.vars.get("y")}}},
    )


def make_player(*functions) -> StepPlayer:
    engine = ComputationEngine(strategy="manual", step_mode=True)
    with engine.registry.initializing():
        engine.registry.add_variable("x", {"role": "input", "default": 3})
        engine.registry.add_variable("y", {"role": "computed"})
    engine.set_computation([], list(functions) or [explain])
    return StepPlayer(engine)


def test_refresh_stages_first_step_and_notifies() -> None:
    player = make_player()
    received = []
    player.engine.registry.subscribe(received.append)

    steps = player.refresh()
    assert [step.description for step in steps] == ["start", "doubled", "per formula"]
    assert player.index == 0
    assert player.error is None
    assert player.engine.registry.values()["y"] == 0
    assert received == [{"y": 0}]


def test_navigation_is_clamped() -> None:
    player = make_player()
    player.refresh()

    assert player.next_step().description == "doubled"
    assert player.engine.registry.values()["y"] == 6

    assert player.go_to_end().description == "per formula"
    assert player.next_step().description == "per formula"
    assert player.index == 2

    assert player.go_to_start().description == "start"
    assert player.prev_step().description == "start"
    assert player.index == 0

    player.go_to_step(99)
    assert player.index == 2
    player.go_to_step(-5)
    assert player.index == 0


def test_stepping_does_not_recompute() -> None:
    player = make_player()
    player.refresh()
    player.go_to_step(1)
    player.go_to_start()
    assert player.engine.registry.values()["y"] == 0


def test_active_variables_follow_current_step() -> None:
    player = make_player()
    player.refresh()
    assert player.active_variables() == {"": {"y"}}

    player.go_to_end()
    assert player.active_variables() == {"f1": {"x", "y"}}


def test_failing_function_keeps_earlier_steps_and_reports_error(caplog) -> None:
    def broken(ctx) -> None:
        ctx.step("before failure", {"y": 1})
        raise ValueError("bad step")

    player = make_player(broken)
    with caplog.at_level(logging.WARNING, logger="formula_engine.stepping"):
        steps = player.refresh()

    assert [step.description for step in steps] == ["before failure"]
    assert player.error == "broken: bad step"
    assert "step_sampling_failed" in caplog.text


def test_empty_player_has_no_current_step() -> None:
    player = StepPlayer(ComputationEngine(strategy="manual", step_mode=True))
    assert player.current_step is None
    assert player.next_step() is None
    assert player.active_variables() == {}
    assert player.refresh() == []
