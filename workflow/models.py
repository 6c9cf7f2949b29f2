"""Workflow data model.

Value types recording one run's declared steps and their outcomes.
``StepResult`` and ``WorkflowError`` are frozen: once a step's attempt
sequence concludes its record is sealed and only ever appended to the
state, never revised.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from app.config import Settings


# ─── Status ───────────────────────────────────────────────────

class WorkflowStatus(str, Enum):
    """Lifecycle of one workflow run."""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)


_ALLOWED_TRANSITIONS = {
    WorkflowStatus.NOT_STARTED: {WorkflowStatus.RUNNING},
    WorkflowStatus.RUNNING: {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED},
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.CANCELLED: set(),
}


class StepStatus(str, Enum):
    """Status of a single workflow step."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ─── Records ──────────────────────────────────────────────────

@dataclass(frozen=True)
class WorkflowError:
    """An error recorded against a step (or the run as a whole).

    ``recoverable`` is a hint for readers of the report; the engine's
    control flow never looks at it.
    """
    step: int
    message: str
    application: Optional[str] = None
    stack: Optional[str] = None
    screenshot: Optional[str] = None
    recoverable: bool = False

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "message": self.message,
            "application": self.application,
            "stack": self.stack,
            "screenshot": self.screenshot,
            "recoverable": self.recoverable,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowError":
        return cls(
            step=data["step"],
            message=data["message"],
            application=data.get("application"),
            stack=data.get("stack"),
            screenshot=data.get("screenshot"),
            recoverable=data.get("recoverable", False),
        )


@dataclass(frozen=True)
class StepResult:
    """Sealed outcome of one step, covering all of its attempts."""
    step_number: int
    name: str
    application: str
    status: StepStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: int = 0
    data: Any = None
    error: Optional[WorkflowError] = None
    screenshots: tuple[str, ...] = ()
    attempts: int = 1

    def to_dict(self) -> dict:
        return {
            "step_number": self.step_number,
            "name": self.name,
            "application": self.application,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "duration_ms": self.duration_ms,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
            "screenshots": list(self.screenshots),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        return cls(
            step_number=data["step_number"],
            name=data["name"],
            application=data["application"],
            status=StepStatus(data["status"]),
            started_at=_parse(data["started_at"]),
            ended_at=_parse(data.get("ended_at")),
            duration_ms=data.get("duration_ms", 0),
            data=data.get("data"),
            error=WorkflowError.from_dict(data["error"]) if data.get("error") else None,
            screenshots=tuple(data.get("screenshots", [])),
            attempts=data.get("attempts", 1),
        )


@dataclass
class WorkflowState:
    """Mutable progress of one run.

    ``step_results`` and ``errors`` are append-only; ``status`` only moves
    forward (see :meth:`transition`).
    """
    total_steps: int = 0
    current_step: int = 0
    step_results: list[StepResult] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    errors: list[WorkflowError] = field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def transition(self, status: WorkflowStatus) -> None:
        """Move to ``status``; raises ``ValueError`` on a backwards move."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal workflow status transition: {self.status.value} -> {status.value}")
        self.status = status

    def advance_to(self, step_number: int) -> None:
        if step_number < self.current_step:
            raise ValueError(f"current_step cannot move back from {self.current_step} to {step_number}")
        self.current_step = step_number

    def record_result(self, result: StepResult) -> None:
        if len(self.step_results) >= self.total_steps:
            raise ValueError("More step results than declared steps")
        self.step_results.append(result)

    def record_error(self, error: WorkflowError) -> None:
        self.errors.append(error)

    def copy(self) -> "WorkflowState":
        """Copy with independent containers; the sealed records are shared."""
        return WorkflowState(
            total_steps=self.total_steps,
            current_step=self.current_step,
            step_results=list(self.step_results),
            data=dict(self.data),
            errors=list(self.errors),
            status=self.status,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )

    def to_dict(self) -> dict:
        return {
            "total_steps": self.total_steps,
            "current_step": self.current_step,
            "step_results": [r.to_dict() for r in self.step_results],
            "data": self.data,
            "errors": [e.to_dict() for e in self.errors],
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowState":
        return cls(
            total_steps=data.get("total_steps", 0),
            current_step=data.get("current_step", 0),
            step_results=[StepResult.from_dict(r) for r in data.get("step_results", [])],
            data=dict(data.get("data", {})),
            errors=[WorkflowError.from_dict(e) for e in data.get("errors", [])],
            status=WorkflowStatus(data.get("status", WorkflowStatus.NOT_STARTED.value)),
            started_at=_parse(data.get("started_at")),
            ended_at=_parse(data.get("ended_at")),
        )


# ─── Declarations ─────────────────────────────────────────────

@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors)}

    @classmethod
    def coerce(cls, value: Any) -> "ValidationResult":
        """Accept a ``ValidationResult``, a ``{"valid", "errors"}`` dict, or a bool."""
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(valid=bool(value.get("valid")), errors=list(value.get("errors") or []))
        if isinstance(value, bool):
            return cls(valid=value)
        return cls(valid=bool(getattr(value, "valid", False)), errors=list(getattr(value, "errors", None) or []))


StepOperation = Callable[[Any], Union[Any, Awaitable[Any]]]
StepValidator = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class WorkflowStep:
    """One declared unit of work bound to a target application."""
    name: str
    application: str
    operation: StepOperation
    validator: Optional[StepValidator] = None
    store_as: Optional[str] = None
    recoverable: bool = False
    timeout: Optional[float] = None  # seconds

    def __post_init__(self):
        if not self.name:
            raise ValueError("Workflow step requires a name")
        if not self.application:
            raise ValueError(f"Workflow step {self.name!r} requires an application")
        if not callable(self.operation):
            raise ValueError(f"Workflow step {self.name!r} operation is not callable")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Workflow step {self.name!r} timeout must be positive")


class WorkflowOptions(BaseModel):
    """Per-workflow execution policy."""

    continue_on_error: bool = False
    capture_screenshots: bool = True
    timeout: float = Field(default=300.0, gt=0)  # whole run, seconds
    retry_failed_steps: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=2.0, ge=0)
    retry_policy: str = "fixed"
    retry_jitter: bool = False
    retryable_errors: list[str] = Field(default_factory=list)  # exception class names; empty retries all

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "WorkflowOptions":
        values = {
            "capture_screenshots": settings.CAPTURE_SCREENSHOTS,
            "timeout": settings.WORKFLOW_TIMEOUT,
            "retry_failed_steps": settings.RETRY_FAILED_STEPS,
            "retry_delay": settings.STEP_RETRY_DELAY,
        }
        values.update(overrides)
        return cls(**values)
