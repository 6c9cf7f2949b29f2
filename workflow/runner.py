"""Workflow runner.

Validates, executes, snapshots and reports one or many workflows and
hands back a uniform ``RunResult`` whatever happened, so tests can assert
on outcomes instead of wrapping every call in ``try``.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import structlog

from workflow.engine import BaseWorkflow
from workflow.models import WorkflowState, WorkflowStatus
from workflow.state_manager import WorkflowStateManager

logger = structlog.get_logger(__name__)


@dataclass
class RunResult:
    """Outcome of running one workflow."""
    workflow: str
    workflow_id: str
    success: bool
    state: WorkflowState
    report: Optional[dict] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "workflow": self.workflow,
            "workflow_id": self.workflow_id,
            "success": self.success,
            "state": self.state.to_dict(),
            "report": self.report,
            "error": self.error,
        }


class WorkflowRunner:
    """Runs workflows with validation, snapshotting and reporting."""

    def __init__(self, state_manager: Optional[WorkflowStateManager] = None):
        self.state_manager = state_manager or WorkflowStateManager()

    async def run(
        self,
        workflow: BaseWorkflow,
        report: bool = False,
        state_manager: Optional[WorkflowStateManager] = None,
    ) -> RunResult:
        """Validate then execute ``workflow``. Never raises."""
        manager = state_manager or self.state_manager
        log = logger.bind(workflow_id=workflow.id, workflow=workflow.name)

        try:
            validation = await workflow.validate()
            if not validation.valid:
                raise ValueError(f"Workflow validation failed: {', '.join(validation.errors)}")

            state = await workflow.execute()
            error = state.errors[-1].message if state.errors else None
            await manager.save_state(workflow.id, state, {"error": error} if error else None)

            result = RunResult(
                workflow=workflow.name,
                workflow_id=workflow.id,
                success=state.status == WorkflowStatus.COMPLETED,
                state=workflow.get_state(),
                error=error,
            )
            if report:
                result.report = manager.generate_report(state)

            log.info("Workflow run finished", success=result.success, status=state.status.value)
            return result

        except Exception as e:
            message = str(e) or type(e).__name__
            log.error("Workflow run failed", error=message)
            state = workflow.get_state()
            try:
                await manager.save_state(workflow.id, state, {"error": message})
            except Exception as save_error:
                log.warning("Failed to save error state", error=str(save_error))
            return RunResult(
                workflow=workflow.name,
                workflow_id=workflow.id,
                success=False,
                state=state,
                error=message,
            )

    async def run_sequence(
        self,
        workflows: Sequence[BaseWorkflow],
        continue_on_error: bool = False,
        parallel: bool = False,
        report: bool = False,
    ) -> list[RunResult]:
        """Run several workflows, one after another or all at once.

        Sequential mode stops after the first unsuccessful workflow unless
        ``continue_on_error``; workflows after that point get no entry.
        Parallel mode always returns one entry per workflow.
        """
        if parallel:
            outcomes = await asyncio.gather(
                *(self.run(w, report=report) for w in workflows),
                return_exceptions=True,
            )
            return [self._settle(w, outcome) for w, outcome in zip(workflows, outcomes)]

        results: list[RunResult] = []
        for workflow in workflows:
            result = await self.run(workflow, report=report)
            results.append(result)
            if not result.success and not continue_on_error:
                logger.info("Stopping sequence after failed workflow", workflow=workflow.name)
                break
        return results

    @staticmethod
    def _settle(workflow: BaseWorkflow, outcome: Any) -> RunResult:
        if isinstance(outcome, RunResult):
            return outcome
        message = str(outcome) or type(outcome).__name__
        return RunResult(
            workflow=workflow.name,
            workflow_id=workflow.id,
            success=False,
            state=workflow.get_state(),
            error=message,
        )
