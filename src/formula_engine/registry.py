from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping

from .errors import ConfigurationError, UnknownVariableError
from .variables import (
    INPUT_VARIABLE_DEFAULTS,
    SetElement,
    Variable,
    coerce_set_element,
    index_in_set,
    normalize_role,
    normalize_variable,
)

ChangeListener = Callable[[dict[str, Any]], None]

logger = logging.getLogger(__name__)


class VariableRegistry:
    """Canonical store of variables, their values and their cross references.

    A controller attached with :meth:`attach` is asked to recompute after every
    accepted write, except while the registry is bulk-initializing or the
    controller is already inside a recompute pass.
    """

    def __init__(self, step_mode: bool = False) -> None:
        self.step_mode = step_mode
        self._variables: dict[str, Variable] = {}
        self._listeners: list[ChangeListener] = []
        self._controller: Any = None
        self._initializing = False

    def attach(self, controller: Any) -> None:
        self._controller = controller

    def __contains__(self, variable_id: object) -> bool:
        return variable_id in self._variables

    def __len__(self) -> int:
        return len(self._variables)

    @property
    def is_initializing(self) -> bool:
        return self._initializing

    @contextmanager
    def initializing(self) -> Iterator[VariableRegistry]:
        previous = self._initializing
        self._initializing = True
        try:
            yield self
        finally:
            self._initializing = previous

    def add_variable(self, variable_id: str, definition: Variable | Mapping[str, Any] | float | None = None) -> bool:
        if variable_id in self._variables:
            return False
        try:
            variable = normalize_variable(variable_id, definition)
        except ConfigurationError as exc:
            logger.warning("invalid_variable_definition", extra={"variable_id": variable_id, "error": str(exc)})
            return False
        variable.id = variable_id
        self._variables[variable_id] = variable
        if variable.key and variable.set:
            self._join_from_key(variable)
        logger.debug("variable_added", extra={"variable_id": variable_id, "role": variable.role})
        return True

    def require(self, variable_id: str) -> Variable:
        variable = self._variables.get(variable_id)
        if variable is None:
            raise UnknownVariableError(variable_id)
        return variable

    def items(self) -> list[tuple[str, Variable]]:
        """Live ``(id, variable)`` pairs; mutations write through to the registry."""
        return list(self._variables.items())

    def ids_with_role(self, role: str) -> list[str]:
        return [variable_id for variable_id, variable in self._variables.items() if variable.role == role]

    def get_variables(self) -> dict[str, Variable]:
        return {variable_id: variable.snapshot() for variable_id, variable in self._variables.items()}

    def values(self) -> dict[str, Any]:
        return {
            variable_id: copy.deepcopy(variable.value)
            for variable_id, variable in self._variables.items()
            if variable.value is not None
        }

    def set_value(self, variable_id: str, value: Any) -> bool:
        variable = self._lookup(variable_id, "set_value")
        if variable is None:
            return False
        variable.value = value
        variable.errored = False
        self._sync_positional_joins(variable, value)
        self._request_recompute()
        return True

    def set_set_value(self, variable_id: str, values: list[SetElement]) -> bool:
        variable = self._lookup(variable_id, "set_set_value")
        if variable is None:
            return False
        variable.value = list(values)
        variable.set = list(values)
        variable.errored = False
        for child in self._variables.values():
            if child.member_of == variable_id:
                child.set = list(values)
        self._request_recompute()
        return True

    def set_value_in_step_mode(self, variable_id: str, value: Any) -> bool:
        variable = self._lookup(variable_id, "set_value_in_step_mode")
        if variable is None:
            return False
        variable.value = value
        return True

    def store_computed(self, variable_id: str, value: Any) -> None:
        variable = self.require(variable_id)
        variable.value = value
        variable.errored = False

    def mark_errored(self, variable_id: str) -> None:
        self.require(variable_id).errored = True

    def set_role(self, variable_id: str, role: str) -> bool:
        variable = self._lookup(variable_id, "set_role")
        if variable is None:
            return False
        normalized = normalize_role(role)
        if normalized == "input" and variable.range is None:
            variable.range = (INPUT_VARIABLE_DEFAULTS["min_value"], INPUT_VARIABLE_DEFAULTS["max_value"])
        variable.role = normalized
        logger.info("variable_role_changed", extra={"variable_id": variable_id, "role": normalized})
        if self._controller is not None and not self._initializing:
            self._controller.rederive()
        return True

    def resolve_key_relationships(self) -> None:
        for variable in self._variables.values():
            if variable.key and variable.set:
                self._join_from_key(variable)
        logger.debug("relationships_resolved", extra={"relation": "key"})

    def resolve_member_of_relationships(self) -> None:
        for variable in self._variables.values():
            if not variable.member_of:
                continue
            parent = self._variables.get(variable.member_of)
            parent_set = _set_of(parent) if parent is not None else None
            if parent_set is None:
                continue
            variable.set = list(parent_set)
            if variable.value is not None or variable.index is not None:
                continue
            if index_in_set(parent_set, parent.value) != -1:  # type: ignore[union-attr]
                variable.value = parent.value  # type: ignore[union-attr]
            elif parent_set and not self.step_mode:
                variable.value = coerce_set_element(parent_set[0])
        logger.debug("relationships_resolved", extra={"relation": "member_of"})

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify(self, changed: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(dict(changed))

    def reset(self) -> None:
        self._variables.clear()
        logger.info("registry_reset")

    def _lookup(self, variable_id: str, operation: str) -> Variable | None:
        try:
            return self.require(variable_id)
        except UnknownVariableError:
            logger.warning("unknown_variable", extra={"variable_id": variable_id, "operation": operation})
            return None

    def _request_recompute(self) -> None:
        if self._controller is None or self._initializing:
            return
        if self._controller.recomputing:
            return
        self._controller.recompute()

    def _join_from_key(self, variable: Variable) -> None:
        key_variable = self._variables.get(variable.key or "")
        if key_variable is None or not key_variable.set or key_variable.value is None:
            return
        position = index_in_set(key_variable.set, key_variable.value)
        if position != -1 and position < len(variable.set or []):
            variable.value = coerce_set_element(variable.set[position])  # type: ignore[index]

    def _sync_positional_joins(self, changed: Variable, value: Any) -> None:
        # dependent -> key: the changed variable has its own key
        if changed.key and changed.set:
            key_variable = self._variables.get(changed.key)
            if key_variable is not None and key_variable.set:
                position = index_in_set(changed.set, value)
                if position != -1 and position < len(key_variable.set):
                    key_variable.value = coerce_set_element(key_variable.set[position])
                    self._propagate_to_dependents(key_variable, position, skip=changed.id)

        # key -> dependents: other variables use the changed variable as their key
        if changed.set:
            position = index_in_set(changed.set, value)
            if position != -1:
                self._propagate_to_dependents(changed, position, skip=changed.id)

    def _propagate_to_dependents(self, key_variable: Variable, position: int, skip: str) -> None:
        for variable_id, variable in self._variables.items():
            if variable.key != key_variable.id or variable_id == skip or not variable.set:
                continue
            if position < len(variable.set):
                variable.value = coerce_set_element(variable.set[position])


def _set_of(variable: Variable | None) -> list[SetElement] | None:
    if variable is None:
        return None
    if variable.set is not None:
        return variable.set
    if isinstance(variable.value, list):
        return variable.value
    return None
