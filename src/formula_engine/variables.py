from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Mapping, Union

from .errors import ConfigurationError

Scalar = Union[int, float]
SetElement = Union[int, float, str]
Value = Union[int, float, list]

ROLES = {"constant", "input", "computed"}
ROLE_ALIASES = {"dependent": "computed"}

INPUT_VARIABLE_DEFAULTS = {
    "min_value": -10.0,
    "max_value": 10.0,
    "step_size": 0.5,
    "value": 1,
}

_FIELD_ALIASES = {
    "type": "role",
    "memberOf": "member_of",
}


@dataclass(slots=True)
class Variable:
    """A named quantity in the registry.

    ``value`` holds a number or, for set-valued variables, a list of numbers or
    strings. ``key`` links this variable's position in ``set`` to the position
    of the key variable's value in its own set. ``member_of`` copies the
    parent's set. ``mapping`` is an explicit callback that the symbolic
    strategy calls with the evaluation scope instead of matching expressions.
    """

    id: str
    role: str = "constant"
    value: Value | None = None
    precision: int | None = None
    range: tuple[float, float] | None = None
    step: float | None = None
    options: list[str] | None = None
    set: list[SetElement] | None = None
    key: str | None = None
    member_of: str | None = None
    index: str | None = None
    units: str | None = None
    name: str | None = None
    description: str | None = None
    mapping: Callable[[dict[str, Any]], Any] | None = field(default=None, repr=False, compare=False)
    errored: bool = False

    def snapshot(self) -> Variable:
        clone = copy.copy(self)
        clone.value = copy.deepcopy(self.value)
        clone.set = list(self.set) if self.set is not None else None
        clone.options = list(self.options) if self.options is not None else None
        return clone

    def to_dict(self) -> dict[str, Any]:
        payload = {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if item.name != "mapping"
        }
        payload["range"] = list(self.range) if self.range is not None else None
        payload["value"] = _json_safe(self.value)
        return payload


def normalize_role(raw_role: Any) -> str:
    role = str(raw_role or "constant").strip().lower()
    role = ROLE_ALIASES.get(role, role)
    if role not in ROLES:
        raise ConfigurationError(f"unsupported variable role: {raw_role}")
    return role


def normalize_variable(variable_id: str, definition: Variable | Mapping[str, Any] | Scalar | None) -> Variable:
    if isinstance(definition, Variable):
        return definition.snapshot()

    if definition is None:
        return Variable(id=variable_id)

    if isinstance(definition, bool) or not isinstance(definition, (int, float, Mapping)):
        raise ConfigurationError(f"variable {variable_id} must be a number or a mapping")

    if isinstance(definition, (int, float)):
        return Variable(id=variable_id, role="constant", value=definition)

    if "value" in definition:
        raise ConfigurationError(
            f'variable {variable_id} uses "value"; use "default" instead, for example {{"role": "input", "default": 5}}'
        )

    attributes: dict[str, Any] = {}
    for raw_key, raw_value in definition.items():
        name = _FIELD_ALIASES.get(raw_key, raw_key)
        if name == "default":
            name = "value"
        attributes[name] = raw_value

    known = {item.name for item in fields(Variable)}
    unknown = sorted(set(attributes) - known)
    if unknown:
        raise ConfigurationError(f"variable {variable_id} has unsupported fields: {', '.join(unknown)}")

    attributes.pop("id", None)
    attributes["role"] = normalize_role(attributes.get("role"))
    if attributes.get("range") is not None:
        low, high = attributes["range"]
        attributes["range"] = (float(low), float(high))
    if isinstance(attributes.get("value"), tuple):
        attributes["value"] = list(attributes["value"])
    if attributes.get("set") is not None:
        attributes["set"] = list(attributes["set"])

    variable = Variable(id=variable_id, **attributes)
    return _apply_role_defaults(variable)


def _apply_role_defaults(variable: Variable) -> Variable:
    if variable.role == "input":
        if variable.value is None and variable.set is None and variable.member_of is None:
            variable.value = INPUT_VARIABLE_DEFAULTS["value"]
        if variable.range is None and not isinstance(variable.value, list):
            variable.range = (INPUT_VARIABLE_DEFAULTS["min_value"], INPUT_VARIABLE_DEFAULTS["max_value"])
    elif variable.role == "constant":
        if variable.value is None and variable.set is None and variable.member_of is None and variable.key is None:
            variable.value = INPUT_VARIABLE_DEFAULTS["value"]
    return variable


def is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def is_valid_result(value: Any) -> bool:
    if is_finite_number(value):
        return True
    if isinstance(value, (list, tuple)):
        return all(isinstance(item, str) or is_finite_number(item) or is_valid_result(item) for item in value)
    return False


def coerce_set_element(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        return float(str(value))
    except ValueError:
        return value


def index_in_set(values: list[SetElement] | None, target: Any) -> int:
    """Position of ``target`` in ``values`` or -1, comparing numbers numerically."""
    if not values or target is None or isinstance(target, list):
        return -1
    for position, candidate in enumerate(values):
        if candidate == target:
            return position
        if is_finite_number(target) and coerce_set_element(candidate) == target:
            return position
    return -1


def _json_safe(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, list):
        return [_json_safe(item) for item in value]
    return value
