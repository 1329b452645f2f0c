from __future__ import annotations


class AutomationError(Exception):
    """Base class for failures raised while processing an enrollment."""

    code = "automation_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConditionEvaluationError(AutomationError):
    code = "condition_evaluation_failed"


class ActionError(AutomationError):
    code = "action_failed"

    def __init__(self, message: str, *, code: str | None = None, action_type: str | None = None) -> None:
        super().__init__(message, code=code)
        self.action_type = action_type


class ValidationError(ActionError):
    """Malformed action or step configuration; raised before any mutation."""

    code = "invalid_config"


class NotFoundError(ActionError):
    code = "not_found"


class ActionExecutionError(ActionError):
    code = "execution_failed"
