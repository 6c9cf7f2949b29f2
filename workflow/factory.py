"""Construction helpers for the scenario workflows."""

from typing import Any, Optional

from workflow.models import WorkflowOptions
from workflow.scenarios.admin_monitoring import AdminMonitoringWorkflow, MonitoringWorkflowOptions
from workflow.scenarios.document_to_feature import DocumentToFeatureOptions, DocumentToFeatureWorkflow


class WorkflowFactory:
    """Builds scenario workflows with shared collaborators.

    ``config``, ``capture`` and the primary page are passed to every
    workflow the factory creates.
    """

    def __init__(self, browser_context: Any, **collaborators: Any):
        self.browser_context = browser_context
        self.collaborators = collaborators

    def create_document_to_feature(
        self,
        scenario: DocumentToFeatureOptions,
        options: Optional[WorkflowOptions] = None,
    ) -> DocumentToFeatureWorkflow:
        return DocumentToFeatureWorkflow(self.browser_context, scenario, options, **self.collaborators)

    def create_admin_monitoring(
        self,
        scenario: Optional[MonitoringWorkflowOptions] = None,
        options: Optional[WorkflowOptions] = None,
    ) -> AdminMonitoringWorkflow:
        return AdminMonitoringWorkflow(self.browser_context, scenario, options, **self.collaborators)

    def create(self, kind: str, *args: Any, **kwargs: Any):
        builders = {
            "document_to_feature": self.create_document_to_feature,
            "admin_monitoring": self.create_admin_monitoring,
        }
        if kind not in builders:
            raise ValueError(f"Unknown workflow: {kind}")
        return builders[kind](*args, **kwargs)
