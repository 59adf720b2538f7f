import logging

import pytest

from formula_engine.errors import ConfigurationError, UnknownVariableError
from formula_engine.registry import VariableRegistry


class RecordingController:
    def __init__(self) -> None:
        self.recomputing = False
        self.recompute_calls = 0
        self.rederive_calls = 0

    def recompute(self) -> bool:
        self.recompute_calls += 1
        return True

    def rederive(self) -> None:
        self.rederive_calls += 1


def _sized_registry() -> VariableRegistry:
    registry = VariableRegistry()
    registry.add_variable("size", {"role": "input", "set": ["S", "M", "L"], "default": "M"})
    registry.add_variable("price", {"set": [10, 20, 30], "key": "size"})
    registry.add_variable("weight", {"set": [1, 2, 3], "key": "size"})
    return registry


def test_add_variable_is_idempotent() -> None:
    registry = VariableRegistry()
    assert registry.add_variable("x", {"role": "input", "default": 2})
    assert not registry.add_variable("x", {"role": "input", "default": 9})
    assert registry.values()["x"] == 2
    assert len(registry) == 1


def test_add_variable_never_raises_for_bad_definitions() -> None:
    registry = VariableRegistry()
    assert not registry.add_variable("bad", {"role": "input", "value": 1})
    assert "bad" not in registry


def test_set_value_on_unknown_variable_is_logged(caplog) -> None:
    registry = VariableRegistry()
    with caplog.at_level(logging.WARNING, logger="formula_engine.registry"):
        assert registry.set_value("nope", 1) is False
    assert "unknown_variable" in caplog.text
    with pytest.raises(UnknownVariableError, match="unknown variable: nope"):
        registry.require("nope")


def test_set_value_requests_recompute_unless_busy_or_initializing() -> None:
    registry = VariableRegistry()
    controller = RecordingController()
    registry.attach(controller)
    registry.add_variable("x", {"role": "input"})

    assert registry.set_value("x", 4)
    assert controller.recompute_calls == 1

    controller.recomputing = True
    registry.set_value("x", 5)
    assert controller.recompute_calls == 1

    controller.recomputing = False
    with registry.initializing():
        registry.set_value("x", 6)
    assert controller.recompute_calls == 1
    assert not registry.is_initializing

    registry.set_value_in_step_mode("x", 7)
    assert controller.recompute_calls == 1
    assert registry.values()["x"] == 7


def test_key_is_resolved_when_added_after_key_variable() -> None:
    registry = _sized_registry()
    assert registry.values()["price"] == 20
    assert registry.values()["weight"] == 2


def test_key_relationships_resolve_after_batch() -> None:
    registry = VariableRegistry()
    with registry.initializing():
        registry.add_variable("price", {"set": [10, 20, 30], "key": "size"})
        registry.add_variable("size", {"role": "input", "set": ["S", "M", "L"], "default": "L"})
    assert "price" not in registry.values()

    registry.resolve_key_relationships()
    assert registry.values()["price"] == 30


def test_positional_join_propagates_from_key_to_dependents() -> None:
    registry = _sized_registry()
    registry.set_value("size", "L")
    assert registry.values()["price"] == 30
    assert registry.values()["weight"] == 3


def test_positional_join_propagates_from_dependent_to_key() -> None:
    registry = _sized_registry()
    registry.set_value("price", 10)
    values = registry.values()
    assert values["size"] == "S"
    assert values["weight"] == 1


def test_value_outside_set_does_not_propagate() -> None:
    registry = _sized_registry()
    registry.set_value("size", "XL")
    assert registry.values()["price"] == 20


def test_member_of_copies_parent_set_and_defaults_to_first_element() -> None:
    registry = VariableRegistry()
    registry.add_variable("options", {"set": [3, 5, 7]})
    registry.add_variable("choice", {"role": "input", "memberOf": "options"})
    registry.resolve_member_of_relationships()

    choice = registry.get_variables()["choice"]
    assert choice.set == [3, 5, 7]
    assert choice.value == 3


def test_member_of_prefers_parent_value() -> None:
    registry = VariableRegistry()
    registry.add_variable("options", {"set": [3, 5, 7], "default": 5})
    registry.add_variable("choice", {"role": "input", "memberOf": "options"})
    registry.resolve_member_of_relationships()
    assert registry.values()["choice"] == 5


def test_member_of_leaves_value_unset_in_step_mode() -> None:
    registry = VariableRegistry(step_mode=True)
    registry.add_variable("options", {"set": [3, 5, 7]})
    registry.add_variable("choice", {"role": "input", "memberOf": "options"})
    registry.resolve_member_of_relationships()

    choice = registry.get_variables()["choice"]
    assert choice.set == [3, 5, 7]
    assert choice.value is None


def test_set_set_value_updates_members() -> None:
    registry = VariableRegistry()
    registry.add_variable("options", {"set": [3, 5, 7]})
    registry.add_variable("choice", {"role": "input", "memberOf": "options"})
    registry.resolve_member_of_relationships()

    assert registry.set_set_value("options", [1, 2])
    variables = registry.get_variables()
    assert variables["options"].value == [1, 2]
    assert variables["choice"].set == [1, 2]


def test_set_role_assigns_default_range_and_rederives() -> None:
    registry = VariableRegistry()
    controller = RecordingController()
    registry.attach(controller)
    registry.add_variable("k", 4)

    assert registry.set_role("k", "input")
    variable = registry.get_variables()["k"]
    assert variable.role == "input"
    assert variable.range == (-10.0, 10.0)
    assert controller.rederive_calls == 1

    assert registry.set_role("missing", "input") is False
    with pytest.raises(ConfigurationError):
        registry.set_role("k", "sideways")


def test_get_variables_returns_detached_snapshots() -> None:
    registry = VariableRegistry()
    registry.add_variable("v", {"role": "input", "default": [1, 2]})
    snapshot = registry.get_variables()
    snapshot["v"].value.append(3)
    assert registry.values()["v"] == [1, 2]


def test_subscribers_receive_notifications_until_unsubscribed() -> None:
    registry = VariableRegistry()
    received = []
    registry.subscribe(received.append)
    registry.notify({"y": 3})
    registry.unsubscribe(received.append)
    registry.notify({"y": 4})
    assert received == [{"y": 3}]


def test_ids_with_role_and_reset() -> None:
    registry = VariableRegistry()
    registry.add_variable("x", {"role": "input"})
    registry.add_variable("y", {"role": "computed"})
    registry.add_variable("z", {"role": "computed"})
    assert registry.ids_with_role("computed") == ["y", "z"]

    registry.reset()
    assert len(registry) == 0
