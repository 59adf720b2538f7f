from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when the engine is configured with an unusable variable or expression set."""


class UnknownVariableError(KeyError):
    """Raised when an operation names a variable that is not registered."""

    def __init__(self, variable_id: str) -> None:
        super().__init__(variable_id)
        self.variable_id = variable_id

    def __str__(self) -> str:
        return f"unknown variable: {self.variable_id}"


class UnsafeExpressionError(ValueError):
    """Raised when the expression includes unsafe syntax."""


class EvaluationAttemptError(ValueError):
    """Raised when a single attempt to resolve a target from an expression fails."""


class GeneratedCodeInvalidError(ValueError):
    """Raised when generated evaluator text fails validation."""


class GenerationRequestError(RuntimeError):
    """Raised when the generation service cannot be reached or answers with an error."""
