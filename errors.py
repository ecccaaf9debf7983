from typing import List, Optional


class AutomationEngineError(Exception):
    """Base class for every error raised by the automation engine."""


class AutomationValidationError(AutomationEngineError):
    """Malformed automation or step graph, rejected at authoring time."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []


class AutomationNotFoundError(AutomationEngineError):
    pass


class AutomationInactiveError(AutomationEngineError):
    pass


class LeadNotFoundError(AutomationEngineError):
    pass


class TriggerEvaluationError(AutomationEngineError):
    """Bad condition data; callers treat it as a non-match."""


class StepExecutionError(AutomationEngineError):
    """A collaborator call made by a step failed."""

    def __init__(self, message: str, step_id: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.step_id = step_id
        self.retryable = retryable


class ConcurrencyConflict(AutomationEngineError):
    """Another worker owns (or took over) the enrollment."""


class WebhookError(StepExecutionError):
    """Non-2xx response or transport failure from a webhook endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None, step_id: Optional[str] = None):
        # Transport errors, throttling and server errors are worth retrying
        retryable = status_code is None or status_code == 429 or status_code >= 500
        super().__init__(message, step_id=step_id, retryable=retryable)
        self.status_code = status_code
