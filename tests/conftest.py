"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Fake Playwright objects (browser context, pages, API request handle)
  so the engine runs without a real browser
- A ConfigManager with test applications (appX, appY, webapp, admin, mcp)
- A recording screenshot capture
- ``make_workflow`` to declare throwaway workflows inline
"""

import json
import os
from typing import Any, Callable, Optional

import pytest

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("CAPTURE_SCREENSHOTS", "false")

from app.config import ApplicationConfig, ConfigManager, Credentials  # noqa: E402
from workflow.engine import BaseWorkflow  # noqa: E402
from workflow.models import WorkflowOptions  # noqa: E402


# ---------------------------------------------------------------------------
# Fake Playwright objects
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status: int = 200, body: Any = None):
        self.status = status
        self._body = body if body is not None else {}

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    async def json(self) -> Any:
        return self._body

    async def text(self) -> str:
        return json.dumps(self._body)


class FakeApi:
    """Stands in for ``APIRequestContext``; answers from a route table."""

    def __init__(self, routes: Optional[dict] = None):
        self.routes = routes if routes is not None else {}
        self.calls: list[tuple[str, str, dict]] = []

    def _answer(self, method: str, url: str, kwargs: dict) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        for (route_method, suffix), answer in self.routes.items():
            if route_method == method and url.endswith(suffix):
                return answer(kwargs) if callable(answer) else answer
        return FakeResponse(404, {"detail": f"no route for {method} {url}"})

    async def get(self, url: str, **kwargs) -> FakeResponse:
        return self._answer("GET", url, kwargs)

    async def post(self, url: str, **kwargs) -> FakeResponse:
        return self._answer("POST", url, kwargs)


class FakePage:
    def __init__(self, name: str = "page", api: Optional[FakeApi] = None):
        self.name = name
        self.url = "about:blank"
        self.request = api or FakeApi()
        self.visited: list[str] = []
        self.fronted = 0
        self.screenshots: list[dict] = []
        self._closed = False
        self.fail_goto = False

    async def goto(self, url: str, **kwargs):
        if self.fail_goto:
            raise RuntimeError(f"net::ERR_CONNECTION_REFUSED at {url}")
        self.url = url
        self.visited.append(url)

    async def bring_to_front(self):
        self.fronted += 1

    async def title(self) -> str:
        return f"Title of {self.url}"

    async def screenshot(self, **kwargs):
        self.screenshots.append(kwargs)
        return b"png"

    async def close(self):
        self._closed = True

    def is_closed(self) -> bool:
        return self._closed


class FakeBrowserContext:
    def __init__(self, api: Optional[FakeApi] = None):
        self.api = api or FakeApi()
        self.pages: list[FakePage] = []

    async def new_page(self) -> FakePage:
        page = FakePage(name=f"page-{len(self.pages) + 1}", api=self.api)
        self.pages.append(page)
        return page


class RecordingCapture:
    """Diagnostic capture that remembers what it was asked to shoot."""

    def __init__(self, fail: bool = False):
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    async def __call__(self, application: str, page: Any, label: str) -> Optional[str]:
        self.calls.append((application, label))
        if self.fail:
            raise RuntimeError("screenshot backend unavailable")
        return label


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> ConfigManager:
    return ConfigManager({
        "appX": ApplicationConfig(name="appX", base_url="http://appx.test"),
        "appY": ApplicationConfig(name="appY", base_url="http://appy.test"),
        "webapp": ApplicationConfig(
            name="webapp",
            base_url="http://webapp.test",
            api_url="http://webapp.test/api",
            credentials=Credentials(username="qa@example.com", password="secret"),
        ),
        "admin": ApplicationConfig(name="admin", base_url="http://admin.test", api_url="http://admin.test/api"),
        "mcp": ApplicationConfig(name="mcp", base_url="http://mcp.test", api_url="http://mcp.test/api"),
    })


@pytest.fixture
def browser_context() -> FakeBrowserContext:
    return FakeBrowserContext()


@pytest.fixture
def capture() -> RecordingCapture:
    return RecordingCapture()


class ScriptedWorkflow(BaseWorkflow):
    """Workflow whose steps are given as ``add_step`` keyword dicts."""

    def __init__(self, step_declarations: list[dict], **kwargs):
        self.step_declarations = step_declarations
        super().__init__(**kwargs)

    def define_steps(self) -> None:
        for declaration in self.step_declarations:
            self.add_step(**declaration)


@pytest.fixture
def make_workflow(browser_context, config, capture) -> Callable[..., ScriptedWorkflow]:
    def _make(step_declarations: list[dict], name: str = "Scripted", **options) -> ScriptedWorkflow:
        collaborators = {
            key: options.pop(key)
            for key in ("primary_page", "primary_application", "browser_context", "config", "capture")
            if key in options
        }
        options.setdefault("retry_delay", 0)
        return ScriptedWorkflow(
            step_declarations,
            browser_context=collaborators.get("browser_context", browser_context),
            name=name,
            options=WorkflowOptions(**options),
            config=collaborators.get("config", config),
            capture=collaborators.get("capture", capture),
            primary_page=collaborators.get("primary_page"),
            primary_application=collaborators.get("primary_application"),
        )
    return _make


def succeed(value: Any = None) -> Callable:
    async def operation(context):
        return value
    return operation


def fail(message: str = "boom") -> Callable:
    async def operation(context):
        raise RuntimeError(message)
    return operation


def flaky(failures: int, value: Any = "ok") -> Callable:
    """Fails the first ``failures`` calls, then returns ``value``."""
    calls = {"count": 0}

    async def operation(context):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise ConnectionError(f"attempt {calls['count']} failed")
        return value
    operation.calls = calls
    return operation
