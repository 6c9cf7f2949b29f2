"""Admin monitoring workflow.

Checks that the web application and the MCP platform are healthy, then
cross-checks the admin console's view of the same services.
"""

from dataclasses import dataclass
from typing import Any, Optional

from workflow.engine import BaseWorkflow, WorkflowContext
from workflow.models import WorkflowOptions
from workflow.scenarios.common import read_json


@dataclass
class MonitoringWorkflowOptions:
    check_platform: bool = True
    health_path: str = "/health"
    dashboard_path: str = "/dashboard"
    metrics_path: str = "/admin/metrics"
    max_error_rate: float = 0.05


class AdminMonitoringWorkflow(BaseWorkflow):
    """Service health as seen by the services and by the admin console."""

    def __init__(
        self,
        browser_context: Any,
        scenario: Optional[MonitoringWorkflowOptions] = None,
        options: Optional[WorkflowOptions] = None,
        **kwargs: Any,
    ):
        self.scenario = scenario or MonitoringWorkflowOptions()
        super().__init__(
            browser_context,
            "Admin Monitoring",
            # Every check is independent; report all of them.
            options or WorkflowOptions(continue_on_error=True, retry_failed_steps=1),
            **kwargs,
        )

    def define_steps(self) -> None:
        self.add_step("Check Web Application Health", "webapp", self._service_health("webapp"),
                      store_as="webappHealth", recoverable=True, timeout=30)
        if self.scenario.check_platform:
            self.add_step("Check Platform Health", "mcp", self._service_health("mcp"),
                          store_as="platformHealth", recoverable=True, timeout=30)
        self.add_step("Open Admin Dashboard", "admin", self._open_dashboard, store_as="dashboard")
        self.add_step("Collect System Metrics", "admin", self._collect_metrics, store_as="metrics")
        self.add_step("Verify Services Healthy", "admin", self._verify, store_as="monitoringSummary")

    def _service_health(self, app: str):
        async def check(context: WorkflowContext) -> dict:
            url = f"{self.config.get_config(app).get_api_url()}{self.scenario.health_path}"
            body = await read_json(await context.api(app).get(url), f"{app} health check")
            status = body.get("status", "unknown")
            if status not in ("ok", "healthy"):
                raise RuntimeError(f"{app} reports status {status!r}")
            return {"status": status, "version": body.get("version")}
        return check

    async def _open_dashboard(self, context: WorkflowContext) -> dict:
        page = context.page("admin")
        await page.goto(f"{context.base_url('admin')}{self.scenario.dashboard_path}")
        return {"url": page.url, "title": await page.title()}

    async def _collect_metrics(self, context: WorkflowContext) -> dict:
        url = f"{self.config.get_config('admin').get_api_url()}{self.scenario.metrics_path}"
        return await read_json(await context.api("admin").get(url), "Admin metrics")

    async def _verify(self, context: WorkflowContext) -> dict:
        metrics = context.get_data("metrics") or {}
        error_rate = float(metrics.get("errorRate", 0.0))
        unhealthy = [
            name for name, key in (("webapp", "webappHealth"), ("mcp", "platformHealth"))
            if key in self._expected_keys() and context.get_data(key) is None
        ]
        if unhealthy:
            raise RuntimeError(f"Unhealthy services: {', '.join(unhealthy)}")
        if error_rate > self.scenario.max_error_rate:
            raise RuntimeError(f"Error rate {error_rate:.2%} above {self.scenario.max_error_rate:.2%}")
        return {"healthy": True, "errorRate": error_rate, "checkedSteps": len(context.state.step_results)}

    def _expected_keys(self) -> set:
        return {step.store_as for step in self.steps if step.store_as}
