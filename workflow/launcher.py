"""Shared helper to launch a browser and run workflows end to end.

Test modules and scripts that are not already inside a Playwright
fixture use this to get a browser, run scenario workflows and keep the
reports. It:

1. Starts Playwright and launches Chromium per the settings
2. Opens one browser context and a primary page for the web application
3. Builds the workflows through a ``WorkflowFactory``
4. Runs them with ``WorkflowRunner`` (snapshots under ``ARTIFACTS_DIR``)
5. Writes one JSON report per workflow and closes the browser

Usage from a synchronous context::

    from workflow.launcher import run_workflows_sync
    results = run_workflows_sync(lambda f: [f.create_admin_monitoring()])

Usage from an async context::

    from workflow.launcher import run_workflows_async
    results = await run_workflows_async(lambda f: [f.create_admin_monitoring()])
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

import structlog
from playwright.async_api import async_playwright

from app.config import ConfigManager, Settings, get_settings
from core.logging_config import setup_logging
from workflow.diagnostics import ScreenshotCapture
from workflow.engine import BaseWorkflow
from workflow.factory import WorkflowFactory
from workflow.runner import RunResult, WorkflowRunner
from workflow.state_manager import WorkflowStateManager

logger = structlog.get_logger(__name__)

WorkflowBuilder = Callable[[WorkflowFactory], Sequence[BaseWorkflow]]


def write_report(result: RunResult, reports_dir: Path) -> Path:
    """Write ``result`` as ``<reports_dir>/<workflow_id>.json``."""
    reports_dir.mkdir(parents=True, exist_ok=True)
    path = reports_dir / f"{result.workflow_id}.json"
    payload = {
        "workflow": result.workflow,
        "workflow_id": result.workflow_id,
        "success": result.success,
        "error": result.error,
        "report": result.report,
    }
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    return path


async def run_workflows_async(
    build: WorkflowBuilder,
    settings: Optional[Settings] = None,
    parallel: bool = False,
    continue_on_error: bool = False,
) -> list[RunResult]:
    """Launch Chromium, run the workflows ``build`` returns, write reports."""
    settings = settings or get_settings()
    setup_logging(settings)
    artifacts_dir = Path(settings.ARTIFACTS_DIR)
    start = time.time()

    pw = await async_playwright().start()
    browser = None
    try:
        browser = await pw.chromium.launch(headless=settings.HEADLESS, slow_mo=settings.SLOW_MO)
        browser_context = await browser.new_context(
            viewport={"width": settings.VIEWPORT_WIDTH, "height": settings.VIEWPORT_HEIGHT},
        )

        collaborators = {
            "config": ConfigManager.from_settings(settings),
            "capture": ScreenshotCapture(str(artifacts_dir)),
        }
        # Parallel workflows must not share a page
        if not parallel:
            collaborators["primary_page"] = await browser_context.new_page()
            collaborators["primary_application"] = "webapp"

        workflows = list(build(WorkflowFactory(browser_context, **collaborators)))
        logger.info("Running workflows", count=len(workflows), parallel=parallel)

        runner = WorkflowRunner(WorkflowStateManager(storage_dir=str(artifacts_dir / "snapshots")))
        results = await runner.run_sequence(
            workflows,
            continue_on_error=continue_on_error,
            parallel=parallel,
            report=True,
        )

        for result in results:
            path = write_report(result, artifacts_dir / "reports")
            logger.info("Report written", workflow=result.workflow, success=result.success, path=str(path))

        return results

    finally:
        try:
            if browser:
                await browser.close()
        finally:
            await pw.stop()
        logger.info("Browser closed", duration_ms=int((time.time() - start) * 1000))


def run_workflows_sync(
    build: WorkflowBuilder,
    settings: Optional[Settings] = None,
    parallel: bool = False,
    continue_on_error: bool = False,
) -> list[RunResult]:
    """Blocking wrapper around :func:`run_workflows_async`."""
    return asyncio.run(run_workflows_async(build, settings, parallel, continue_on_error))
