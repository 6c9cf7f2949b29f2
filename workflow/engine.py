"""Workflow Execution Engine: cross-application step sequencer.

This is the core of the E2E suite. A concrete workflow subclasses
``BaseWorkflow`` and declares an ordered list of steps, each bound to one
target application (``webapp``, ``admin``, ``mcp``...). ``execute()``
then:

- Opens one browser surface per application referenced by the steps,
  before any step runs
- Runs the steps strictly in declared order, bringing the step's
  application to the foreground first
- Races every attempt against the step timeout and the whole run against
  the workflow timeout
- Retries a failed step with a fixed backoff, sealing exactly one
  ``StepResult`` per step however many attempts it took
- Captures screenshots on completion and failure (best-effort)
- Aborts on the first failed step unless ``continue_on_error`` is set
- Closes every surface it opened, on every exit path

Example:
    class LoginAndAudit(BaseWorkflow):
        def define_steps(self):
            self.add_step("Log in", "webapp", self._login, store_as="session")
            self.add_step("Check audit log", "admin", self._check_audit)

    state = await LoginAndAudit(browser_context, "Login audit").execute()
"""

import asyncio
import inspect
import random
import string
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from app.config import ConfigManager, get_settings
from core.exceptions import AlreadyExecutedError, NotInitializedError, StepExecutionError
from workflow.application_context import ApplicationContext, ApplicationSurface
from workflow.diagnostics import DiagnosticCapture, ScreenshotCapture, artifact_name
from workflow.models import (
    StepResult,
    StepStatus,
    ValidationResult,
    WorkflowError,
    WorkflowOptions,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
)
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_ID_ALPHABET[rem])
        if not value:
            return "".join(reversed(digits))


def generate_workflow_id() -> str:
    """``workflow_<base36 ms timestamp>_<5 random chars>``."""
    timestamp = _base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return f"workflow_{timestamp}_{suffix}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ─── Execution Context ────────────────────────────────────────

@dataclass
class WorkflowContext:
    """Live context handed to every step operation and validator.

    ``applications`` is only set while ``execute()`` is running.
    """

    id: str
    name: str
    started_at: datetime
    state: WorkflowState
    current_app: Optional[str] = None
    applications: Optional[ApplicationContext] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def surface(self, app: Optional[str] = None) -> ApplicationSurface:
        target = app or self.current_app
        if self.applications is None or target is None:
            raise NotInitializedError(target or "<no current application>")
        return self.applications.get(target)

    def page(self, app: Optional[str] = None) -> Any:
        return self.surface(app).page

    def api(self, app: Optional[str] = None) -> Any:
        return self.surface(app).api

    def base_url(self, app: Optional[str] = None) -> str:
        return self.surface(app).base_url

    def get_data(self, key: Optional[str] = None, default: Any = None) -> Any:
        if key is None:
            return self.state.data
        return self.state.data.get(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self.state.data[key] = value


@dataclass
class _Attempt:
    """Outcome of one try of a step; only lives inside the attempt loop."""
    number: int
    started_at: datetime
    ended_at: datetime
    error: Optional[Exception] = None
    stack: Optional[str] = None

    @property
    def message(self) -> str:
        if self.error is None:
            return ""
        return str(self.error) or type(self.error).__name__


# ─── Base Workflow ────────────────────────────────────────────

class BaseWorkflow(ABC):
    """Base class for all cross-application workflows.

    Subclasses implement :meth:`define_steps` and call :meth:`add_step`
    from it. Attributes that step operations need must be set before
    calling ``super().__init__`` because the step list is declared (and
    sealed) during construction.
    """

    def __init__(
        self,
        browser_context: Any,
        name: str,
        options: Optional[WorkflowOptions] = None,
        config: Any = None,
        capture: Optional[DiagnosticCapture] = None,
        primary_page: Any = None,
        primary_application: Optional[str] = None,
    ):
        self.browser_context = browser_context
        self.options = options or WorkflowOptions()
        self.config = config if config is not None else ConfigManager.from_settings()
        self.capture = capture if capture is not None else ScreenshotCapture(get_settings().ARTIFACTS_DIR)
        if not isinstance(self.capture, DiagnosticCapture):
            raise TypeError(f"capture must be callable as capture(application, page, label), got {type(self.capture).__name__}")
        self._primary_page = primary_page
        self._primary_application = primary_application
        self._retry_strategy = RetryStrategy.build(
            self.options.retry_policy,
            self.options.retry_failed_steps,
            self.options.retry_delay,
            jitter=self.options.retry_jitter,
            retryable_errors=self.options.retryable_errors,
        )
        self._executed = False
        self._sealed = False
        self._steps: list[WorkflowStep] = []

        self.context = WorkflowContext(
            id=generate_workflow_id(),
            name=name,
            started_at=_utc_now(),
            state=WorkflowState(),
        )
        self._log = logger.bind(workflow_id=self.context.id, workflow=name)

        self.define_steps()
        self._sealed = True
        self.context.state.total_steps = len(self._steps)

    @abstractmethod
    def define_steps(self) -> None:
        """Declare the workflow's steps with :meth:`add_step`."""

    # ── Declaration ──

    def add_step(
        self,
        name: str,
        application: str,
        operation,
        *,
        validator=None,
        store_as: Optional[str] = None,
        recoverable: bool = False,
        timeout: Optional[float] = None,
    ) -> WorkflowStep:
        if self._sealed:
            raise RuntimeError(f"Steps of workflow {self.context.name!r} are already defined")
        step = WorkflowStep(
            name=name,
            application=application,
            operation=operation,
            validator=validator,
            store_as=store_as,
            recoverable=recoverable,
            timeout=timeout,
        )
        self._steps.append(step)
        return step

    @property
    def id(self) -> str:
        return self.context.id

    @property
    def name(self) -> str:
        return self.context.name

    @property
    def steps(self) -> tuple:
        return tuple(self._steps)

    def required_applications(self) -> list[str]:
        """Distinct applications referenced by the steps, in first-use order."""
        return list(dict.fromkeys(step.application for step in self._steps))

    # ── Accessors ──

    def get_state(self) -> WorkflowState:
        return self.context.state.copy()

    def get_data(self, key: Optional[str] = None) -> Any:
        if key is None:
            return dict(self.context.state.data)
        return self.context.state.data.get(key)

    def set_data(self, key: str, value: Any) -> None:
        self.context.state.data[key] = value

    # ── Validation ──

    async def validate(self) -> ValidationResult:
        """Pre-flight check. Read-only and never raises.

        Checks every referenced application's configuration, that steps
        exist, and runs each step's validator against the not-yet-started
        context.
        """
        errors: list[str] = []

        for app in self.required_applications():
            try:
                validation = ValidationResult.coerce(self.config.get_config(app).validate())
            except Exception as e:
                errors.append(f"{app} configuration invalid: {e}")
                continue
            if not validation.valid:
                errors.append(f"{app} configuration invalid: {', '.join(validation.errors)}")

        if not self._steps:
            errors.append("No steps defined in workflow")

        for step in self._steps:
            if step.validator is None:
                continue
            try:
                result = ValidationResult.coerce(await _resolve(step.validator(self.context)))
            except Exception as e:
                errors.append(f"Step '{step.name}' validator raised: {e}")
                continue
            if not result.valid:
                errors.extend(result.errors or [f"Step '{step.name}' validation failed"])

        return ValidationResult(valid=not errors, errors=errors)

    # ── Execution ──

    async def execute(self) -> WorkflowState:
        """Run every step and return the terminal state.

        Step failures are recorded in the state rather than raised. Only a
        repeated call (``AlreadyExecutedError``) or cancellation of the
        calling task escapes.
        """
        if self._executed:
            raise AlreadyExecutedError(self.context.id)
        self._executed = True

        state = self.context.state
        state.started_at = _utc_now()
        state.transition(WorkflowStatus.RUNNING)
        self._log.info("Workflow starting", total_steps=state.total_steps, retry=self._retry_strategy.to_dict())

        applications = ApplicationContext(
            self.browser_context,
            self.config,
            self.required_applications(),
            primary_page=self._primary_page,
            primary_application=self._primary_application,
        )
        self.context.applications = applications

        try:
            async with applications:
                await asyncio.wait_for(self._run_steps(applications), timeout=self.options.timeout)
        except asyncio.CancelledError:
            self._finish(WorkflowStatus.CANCELLED)
            self._log.warning("Workflow cancelled", current_step=state.current_step)
            raise
        except StepExecutionError as e:
            # The step's own error is already in state.errors
            self._log.error("Workflow aborted", step=e.step_number, error=e.message)
        except asyncio.TimeoutError:
            self._record_run_error(f"Workflow exceeded timeout of {self.options.timeout}s", None)
        except Exception as e:
            self._record_run_error(str(e) or type(e).__name__, traceback.format_exc())

        self._finish(WorkflowStatus.FAILED if state.errors else WorkflowStatus.COMPLETED)
        return state

    async def _run_steps(self, applications: ApplicationContext) -> None:
        state = self.context.state

        # All surfaces up front so a broken application fails before any step runs
        for app in self.required_applications():
            await applications.initialize(app)

        for number, step in enumerate(self._steps, start=1):
            state.advance_to(number)

            if self.context.current_app != step.application:
                await applications.switch_to(step.application)
                self.context.current_app = step.application

            result = await self._execute_step(step, number)
            state.record_result(result)

            if result.status == StepStatus.FAILED:
                state.record_error(result.error)
                if not self.options.continue_on_error:
                    raise StepExecutionError(number, result.error.message, step.application, step.recoverable)

    async def _execute_step(self, step: WorkflowStep, number: int) -> StepResult:
        """Run the attempt loop for one step and seal its result."""
        log = self._log.bind(step=number, step_name=step.name, application=step.application)
        log.info("Executing step")

        started_at = _utc_now()
        attempts: list[_Attempt] = []

        while True:
            attempt_started = _utc_now()
            try:
                output = await self._run_attempt(step)
            except Exception as e:
                attempts.append(_Attempt(
                    number=len(attempts) + 1,
                    started_at=attempt_started,
                    ended_at=_utc_now(),
                    error=e,
                    stack=traceback.format_exc(),
                ))
                if not self._retry_strategy.should_retry(len(attempts), e):
                    return await self._seal_failure(step, number, started_at, attempts, log)

                delay = self._retry_strategy.compute_delay(len(attempts))
                log.warning(
                    "Retrying step",
                    attempt=len(attempts) + 1,
                    max_attempts=self._retry_strategy.max_attempts,
                    delay=delay,
                    error=attempts[-1].message,
                )
                await asyncio.sleep(delay)
            else:
                attempts.append(_Attempt(
                    number=len(attempts) + 1,
                    started_at=attempt_started,
                    ended_at=_utc_now(),
                ))
                return await self._seal_success(step, number, started_at, attempts, output, log)

    async def _run_attempt(self, step: WorkflowStep) -> Any:
        async def invoke():
            return await _resolve(step.operation(self.context))

        if step.timeout is None:
            return await invoke()
        try:
            return await asyncio.wait_for(invoke(), timeout=step.timeout)
        except asyncio.TimeoutError:
            raise asyncio.TimeoutError(f"Step timed out after {step.timeout}s") from None

    async def _seal_success(self, step, number, started_at, attempts, output, log) -> StepResult:
        if step.store_as:
            self.context.state.data[step.store_as] = output

        screenshots: tuple = ()
        if self.options.capture_screenshots:
            artifact = await self._capture(step)
            if artifact:
                screenshots = (artifact,)

        ended_at = attempts[-1].ended_at
        result = StepResult(
            step_number=number,
            name=step.name,
            application=step.application,
            status=StepStatus.COMPLETED,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=int((ended_at - started_at).total_seconds() * 1000),
            data=output,
            screenshots=screenshots,
            attempts=len(attempts),
        )
        log.info("Step completed", duration_ms=result.duration_ms, attempts=result.attempts)
        return result

    async def _seal_failure(self, step, number, started_at, attempts, log) -> StepResult:
        last = attempts[-1]

        screenshot = None
        if self.options.capture_screenshots:
            screenshot = await self._capture(step, is_error=True)

        error = WorkflowError(
            step=number,
            message=last.message,
            application=step.application,
            stack=last.stack,
            screenshot=screenshot,
            recoverable=step.recoverable,
        )
        result = StepResult(
            step_number=number,
            name=step.name,
            application=step.application,
            status=StepStatus.FAILED,
            started_at=started_at,
            ended_at=last.ended_at,
            duration_ms=int((last.ended_at - started_at).total_seconds() * 1000),
            error=error,
            screenshots=(screenshot,) if screenshot else (),
            attempts=len(attempts),
        )
        log.error("Step failed", error=error.message, attempts=result.attempts, recoverable=step.recoverable)
        return result

    async def _capture(self, step: WorkflowStep, is_error: bool = False) -> Optional[str]:
        try:
            surface = self.context.surface(step.application)
            return await self.capture(
                step.application,
                surface.page,
                artifact_name(self.context.id, step.name, is_error),
            )
        except Exception as e:
            self._log.warning("Diagnostic capture failed", step_name=step.name, error=str(e))
            return None

    def _record_run_error(self, message: str, stack: Optional[str]) -> None:
        state = self.context.state
        self._log.error("Workflow failed", step=state.current_step, error=message)
        state.record_error(WorkflowError(
            step=state.current_step,
            message=message,
            application=self.context.current_app,
            stack=stack,
            recoverable=False,
        ))

    def _finish(self, status: WorkflowStatus) -> None:
        state = self.context.state
        state.ended_at = _utc_now()
        state.transition(status)
        self._log.info(
            "Workflow finished",
            status=status.value,
            steps_run=len(state.step_results),
            errors=len(state.errors),
        )
