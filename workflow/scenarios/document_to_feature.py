"""Document to Feature workflow.

Uploads a requirements document to the web application, checks the MCP
platform indexed it, generates BDD features from it, saves them to a
project and optionally generates Playwright code and quality scores.
"""

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from workflow.engine import BaseWorkflow, WorkflowContext
from workflow.models import ValidationResult, WorkflowOptions
from workflow.scenarios.common import read_json


@dataclass
class DocumentToFeatureOptions:
    document_path: str
    project_name: str = "Default Project"
    feature_count: int = 5
    generate_playwright: bool = False
    validate_quality: bool = False
    quality_threshold: float = 0.8


class DocumentToFeatureWorkflow(BaseWorkflow):
    """Document upload → knowledge base → feature generation."""

    def __init__(
        self,
        browser_context: Any,
        scenario: DocumentToFeatureOptions,
        options: Optional[WorkflowOptions] = None,
        **kwargs: Any,
    ):
        self.scenario = scenario
        super().__init__(
            browser_context,
            "Document to Feature Generation",
            options or WorkflowOptions(continue_on_error=False, capture_screenshots=True),
            **kwargs,
        )

    def _api_url(self, app: str) -> str:
        return self.config.get_config(app).get_api_url()

    def define_steps(self) -> None:
        self.add_step(
            "Authenticate to Web Application",
            "webapp",
            self._authenticate,
            validator=self._has_credentials,
            store_as="authData",
        )
        self.add_step(
            "Upload Requirements Document",
            "webapp",
            self._upload_document,
            validator=self._document_exists,
            store_as="uploadData",
            recoverable=True,
        )
        self.add_step(
            "Verify Document in Knowledge Base",
            "mcp",
            self._verify_indexed,
            store_as="indexingData",
            timeout=60,
        )
        self.add_step(
            "Generate Features from Document",
            "webapp",
            self._generate_features,
            store_as="generationData",
            recoverable=True,
            timeout=120,
        )
        self.add_step("Save Features to Project", "webapp", self._save_features, store_as="saveData")

        if self.scenario.generate_playwright:
            self.add_step("Generate Playwright Code", "mcp", self._generate_code, store_as="codeGenerationData")

        if self.scenario.validate_quality:
            self.add_step("Validate Feature Quality", "webapp", self._validate_quality, store_as="qualityData")

        self.add_step("Generate Workflow Summary", "webapp", self._summarize, store_as="workflowSummary")

    # ── Validators ──

    def _has_credentials(self, context: WorkflowContext) -> ValidationResult:
        try:
            credentials = self.config.get_config("webapp").get_default_credentials()
        except Exception as e:
            return ValidationResult(valid=False, errors=[str(e)])
        if credentials is None:
            return ValidationResult(valid=False, errors=["No webapp credentials configured"])
        return ValidationResult(valid=True)

    def _document_exists(self, context: WorkflowContext) -> ValidationResult:
        if not Path(self.scenario.document_path).is_file():
            return ValidationResult(valid=False, errors=[f"Document not found: {self.scenario.document_path}"])
        return ValidationResult(valid=True)

    # ── Steps ──

    async def _authenticate(self, context: WorkflowContext) -> dict:
        credentials = self.config.get_config("webapp").get_default_credentials()
        if credentials is None:
            raise RuntimeError("No default credentials configured")

        response = await context.api("webapp").post(
            f"{self._api_url('webapp')}/auth/login",
            data={"email": credentials.username, "password": credentials.password},
        )
        body = await read_json(response, "Login")
        context.metadata["auth_token"] = body.get("token")
        return {"authenticated": True, "user": body.get("user")}

    def _auth_headers(self, context: WorkflowContext) -> dict:
        token = context.metadata.get("auth_token")
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _upload_document(self, context: WorkflowContext) -> dict:
        path = Path(self.scenario.document_path)
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        response = await context.api("webapp").post(
            f"{self._api_url('webapp')}/documents",
            headers=self._auth_headers(context),
            multipart={
                "file": {"name": path.name, "mimeType": mime_type, "buffer": path.read_bytes()},
                "project": self.scenario.project_name,
                "type": "requirements",
            },
        )
        body = await read_json(response, "Document upload")
        return {
            "documentId": body["id"],
            "documentName": body.get("name", path.name),
            "processingTime": body.get("processingTime"),
            "status": body.get("status", "processed"),
        }

    async def _verify_indexed(self, context: WorkflowContext) -> dict:
        upload = context.get_data("uploadData")
        response = await context.api("mcp").post(
            f"{self._api_url('mcp')}/knowledge/query",
            data={"query": f"document:{upload['documentName']}", "limit": 10, "threshold": 0.7},
        )
        results = (await read_json(response, "Knowledge query")).get("results", [])
        indexed = any(r.get("metadata", {}).get("document_id") == upload["documentId"] for r in results)
        if not indexed:
            raise RuntimeError(f"Document {upload['documentId']} is not indexed in the knowledge base")
        return {
            "indexed": indexed,
            "chunks": len(results),
            "avgScore": sum(r.get("score", 0) for r in results) / len(results),
        }

    async def _generate_features(self, context: WorkflowContext) -> dict:
        upload = context.get_data("uploadData")
        response = await context.api("webapp").post(
            f"{self._api_url('webapp')}/features/generate",
            headers=self._auth_headers(context),
            data={
                "documentId": upload["documentId"],
                "featureCount": self.scenario.feature_count,
                "includeEdgeCases": True,
                "generateSteps": True,
            },
        )
        features = (await read_json(response, "Feature generation")).get("features", [])
        return {
            "generatedFeatures": len(features),
            "validFeatures": sum(1 for f in features if f.get("valid")),
            "features": [
                {
                    "id": f.get("id"),
                    "title": f["title"],
                    "scenarios": len(f.get("scenarios", [])),
                    "valid": bool(f.get("valid")),
                }
                for f in features
            ],
        }

    async def _save_features(self, context: WorkflowContext) -> dict:
        generation = context.get_data("generationData")
        saved = []
        for feature in generation["features"]:
            if not feature["valid"]:
                continue
            response = await context.api("webapp").post(
                f"{self._api_url('webapp')}/projects/features",
                headers=self._auth_headers(context),
                data={
                    "title": feature["title"],
                    "project": self.scenario.project_name,
                    "tags": ["automated", "from-document"],
                },
            )
            saved.append(await read_json(response, f"Save feature {feature['title']!r}"))
        return {
            "savedCount": len(saved),
            "featureIds": [f.get("id") for f in saved],
            "projectName": self.scenario.project_name,
        }

    async def _generate_code(self, context: WorkflowContext) -> dict:
        generation = context.get_data("generationData")
        code = []
        for feature in generation["features"]:
            if not feature["valid"]:
                continue
            response = await context.api("mcp").post(
                f"{self._api_url('mcp')}/codegen/playwright",
                data={"feature": feature["title"], "framework": "playwright", "typescript": True},
            )
            body = await read_json(response, f"Code generation for {feature['title']!r}")
            code.append({"feature": feature["title"], "code": body.get("code", "")})
        return {
            "generatedCodeCount": len(code),
            "totalLines": sum(len(c["code"].splitlines()) for c in code),
            "playwrightCode": code,
        }

    async def _validate_quality(self, context: WorkflowContext) -> dict:
        generation = context.get_data("generationData")
        results = []
        for feature in generation["features"]:
            response = await context.api("webapp").post(
                f"{self._api_url('webapp')}/features/validate",
                headers=self._auth_headers(context),
                data={
                    "featureId": feature["id"],
                    "checks": ["gherkin_syntax", "scenario_completeness", "step_definitions", "test_coverage"],
                },
            )
            body = await read_json(response, f"Quality check for {feature['title']!r}")
            results.append({"feature": feature["title"], "score": body.get("score", 0.0), "issues": body.get("issues", [])})

        average = sum(r["score"] for r in results) / len(results) if results else 0.0
        return {
            "averageQualityScore": average,
            "passedQualityCheck": average >= self.scenario.quality_threshold,
            "results": results,
        }

    async def _summarize(self, context: WorkflowContext) -> dict:
        data = context.get_data()
        summary = {
            "document": {
                "name": data["uploadData"]["documentName"],
                "id": data["uploadData"]["documentId"],
                "processingTime": data["uploadData"]["processingTime"],
            },
            "indexing": {
                "indexed": data["indexingData"]["indexed"],
                "chunks": data["indexingData"]["chunks"],
            },
            "generation": {
                "totalFeatures": data["generationData"]["generatedFeatures"],
                "validFeatures": data["generationData"]["validFeatures"],
                "savedFeatures": data["saveData"]["savedCount"],
            },
            "quality": data.get("qualityData"),
            "playwrightCode": data.get("codeGenerationData"),
            "workflow": {
                "steps": len(context.state.step_results),
                "errors": len(context.state.errors),
            },
        }
        if self.options.capture_screenshots:
            summary["screenshots"] = await context.applications.capture_all(self.capture, f"{context.id}_complete")
        return summary

    def get_results(self) -> Optional[dict]:
        return self.get_data("workflowSummary")
