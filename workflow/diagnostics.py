"""Diagnostic capture for workflow steps.

Screenshots are best-effort: a capture failure is logged and reported as
``None`` so it never replaces the step failure it was meant to document.
"""

import re
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class DiagnosticCapture(Protocol):
    """Anything the engine can hand a page to for a screenshot."""

    async def __call__(self, application: str, page: Any, label: str) -> Optional[str]:
        ...


def artifact_name(workflow_id: str, step_name: str, is_error: bool = False) -> str:
    """Build ``<workflow id>_step<Step_Name>[_error].png``."""
    safe = re.sub(r"\s+", "_", step_name.strip())
    safe = re.sub(r"[^A-Za-z0-9_\-]", "", safe)
    return f"{workflow_id}_step{safe}{'_error' if is_error else ''}.png"


class ScreenshotCapture:
    """Full-page Playwright screenshots written under ``artifacts_dir``.

    Returns the file name (relative to ``artifacts_dir``) as the artifact
    identifier.
    """

    def __init__(self, artifacts_dir: str = "test-results/workflows", full_page: bool = True):
        self.artifacts_dir = Path(artifacts_dir)
        self.full_page = full_page

    async def __call__(self, application: str, page: Any, label: str) -> Optional[str]:
        filename = label if label.endswith(".png") else f"{label}.png"
        try:
            self.artifacts_dir.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(self.artifacts_dir / filename), full_page=self.full_page)
        except Exception as e:
            logger.warning(
                "Failed to capture screenshot",
                application=application,
                artifact=filename,
                error=str(e),
            )
            return None

        logger.debug("Screenshot captured", application=application, artifact=filename)
        return filename
