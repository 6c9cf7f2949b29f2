"""Custom exceptions for the workflow engine."""

from typing import Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow engine."""

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


class ConfigurationError(WorkflowEngineError):
    """A required application's configuration is missing or invalid."""

    def __init__(self, message: str = "Invalid configuration", application: Optional[str] = None):
        self.application = application
        super().__init__(message)


class StepExecutionError(WorkflowEngineError):
    """A step's operation failed after exhausting its attempts."""

    def __init__(
        self,
        step_number: int,
        message: str,
        application: Optional[str] = None,
        recoverable: bool = False,
    ):
        self.step_number = step_number
        self.application = application
        self.recoverable = recoverable
        super().__init__(f"Step {step_number} failed: {message}")


class NotInitializedError(WorkflowEngineError):
    """An application surface was requested that this run never opened."""

    def __init__(self, application: str):
        self.application = application
        super().__init__(f"Application {application} not initialized")


class AlreadyExecutedError(WorkflowEngineError):
    """``execute()`` was called on a workflow that already ran."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} has already been executed")
