"""Per-application browser surfaces for one workflow run.

One ``ApplicationContext`` is created per ``execute()`` call. It opens a
Playwright page for each application the workflow declares (all inside
the caller's ``BrowserContext`` so cookies and storage behave like a real
user hopping between tabs), tracks which application is in the
foreground, and closes everything it opened when the run ends.

The set of application names is fixed at construction from the
workflow's step list; asking for any other name is a defect in the
workflow and fails with ``NotInitializedError``.

Usage:
    async with ApplicationContext(browser_context, config, {"webapp", "admin"}) as apps:
        await apps.initialize("webapp")
        await apps.switch_to("webapp")
        page = apps.get("webapp").page
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import structlog

from core.exceptions import NotInitializedError

logger = structlog.get_logger(__name__)


@dataclass
class ApplicationSurface:
    """The page and API handle opened for one application."""
    application: str
    page: Any
    api: Any
    base_url: str
    is_primary: bool = False
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_closed(self) -> bool:
        return self.page.is_closed()


class ApplicationContext:
    """Opens, indexes and releases one surface per target application."""

    def __init__(
        self,
        browser_context: Any,
        config: Any,
        applications: Iterable[str],
        primary_page: Any = None,
        primary_application: Optional[str] = None,
    ):
        self._browser_context = browser_context
        self._config = config
        self._applications = frozenset(applications)
        self._primary_page = primary_page
        self._primary_application = primary_application
        self._surfaces: dict[str, ApplicationSurface] = {}
        self._current: Optional[str] = None

        if primary_page is not None and primary_application not in self._applications:
            # The primary page stays with its owner; nothing here will use it.
            self._primary_page = None

    @property
    def applications(self) -> frozenset:
        return self._applications

    @property
    def current(self) -> Optional[str]:
        return self._current

    @property
    def initialized_applications(self) -> list[str]:
        return list(self._surfaces)

    def _check_known(self, app: str) -> None:
        if app not in self._applications:
            raise NotInitializedError(app)

    async def initialize(self, app: str) -> ApplicationSurface:
        """Open ``app``'s surface at its configured base URL (once per run)."""
        self._check_known(app)
        surface = self._surfaces.get(app)
        if surface is not None:
            return surface

        base_url = self._config.get_config(app).get_base_url()

        is_primary = app == self._primary_application and self._primary_page is not None
        page = self._primary_page if is_primary else await self._browser_context.new_page()
        surface = ApplicationSurface(
            application=app,
            page=page,
            api=page.request,
            base_url=base_url,
            is_primary=is_primary,
        )
        # Registered before navigating so a failed goto is still released.
        self._surfaces[app] = surface

        await page.goto(base_url)
        logger.info("Application initialized", application=app, base_url=base_url, primary=is_primary)
        return surface

    def get(self, app: str) -> ApplicationSurface:
        self._check_known(app)
        surface = self._surfaces.get(app)
        if surface is None:
            raise NotInitializedError(app)
        return surface

    async def switch_to(self, app: str) -> ApplicationSurface:
        """Bring ``app`` to the foreground; a no-op when it already is."""
        surface = self.get(app)
        if self._current == app:
            return surface

        await surface.page.bring_to_front()
        logger.debug("Switched application", previous=self._current, application=app)
        self._current = app
        return surface

    async def capture_all(self, capture: Any, label: str) -> dict[str, Optional[str]]:
        """Screenshot every open surface; returns artifact ids per application."""
        artifacts: dict[str, Optional[str]] = {}
        for app, surface in self._surfaces.items():
            if surface.is_closed:
                continue
            artifacts[app] = await capture(app, surface.page, f"{label}_{app}")
        return artifacts

    async def release_all(self) -> None:
        """Close every owned surface. The caller's primary page stays open."""
        for app, surface in list(self._surfaces.items()):
            if surface.is_primary:
                continue
            try:
                if not surface.is_closed:
                    await surface.page.close()
            except Exception as e:
                logger.warning("Failed to close application surface", application=app, error=str(e))
        self._current = None

    async def __aenter__(self) -> "ApplicationContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release_all()
