"""Engine configuration.

Settings are loaded from environment variables (or a ``.env`` file) once
and cached.  Per-application configuration (base URL, API URL, default
credentials) is derived from the same settings and exposed through
:class:`ConfigManager`, which is the configuration resolver handed to
every workflow.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    APP_NAME: str = "Cross-App Workflow Engine"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text
    LOG_FILE: str = ""  # optional JSON log file, e.g. test-results/workflows/run.log

    # Browser
    HEADLESS: bool = True
    SLOW_MO: int = 0
    VIEWPORT_WIDTH: int = 1280
    VIEWPORT_HEIGHT: int = 720

    # Workflow defaults
    ARTIFACTS_DIR: str = "test-results/workflows"
    CAPTURE_SCREENSHOTS: bool = True
    WORKFLOW_TIMEOUT: float = 300.0  # 5 min
    STEP_RETRY_DELAY: float = 2.0
    RETRY_FAILED_STEPS: int = 0

    # Target applications
    WEBAPP_BASE_URL: str = "http://localhost:3000"
    WEBAPP_API_URL: str = ""
    WEBAPP_USERNAME: str = ""
    WEBAPP_PASSWORD: str = ""

    ADMIN_BASE_URL: str = "http://localhost:3001"
    ADMIN_API_URL: str = ""
    ADMIN_USERNAME: str = ""
    ADMIN_PASSWORD: str = ""

    MCP_BASE_URL: str = "http://localhost:8000"
    MCP_API_URL: str = ""

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()


# ─── Application configuration ────────────────────────────────

@dataclass
class ConfigValidation:
    """Outcome of validating one application's configuration."""
    valid: bool
    errors: List[str] = field(default_factory=list)


class Credentials(BaseModel):
    username: str
    password: str


@dataclass
class ApplicationConfig:
    """Configuration of one target application."""

    name: str
    base_url: str
    api_url: str = ""
    credentials: Optional[Credentials] = None
    required_credentials: bool = False

    def get_base_url(self) -> str:
        return self.base_url.rstrip("/")

    def get_api_url(self) -> str:
        return (self.api_url or self.base_url).rstrip("/")

    def get_default_credentials(self) -> Optional[Credentials]:
        return self.credentials

    def validate(self) -> ConfigValidation:
        """Check the configuration is usable before any browser work starts."""
        errors: List[str] = []

        for label, url in (("base URL", self.base_url), ("API URL", self.api_url)):
            if not url:
                if label == "base URL":
                    errors.append(f"{label} is not set")
                continue
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"{label} is not a valid http(s) URL: {url!r}")

        if self.required_credentials and self.credentials is None:
            errors.append("default credentials are not configured")

        return ConfigValidation(valid=not errors, errors=errors)


def _credentials(username: str, password: str) -> Optional[Credentials]:
    if username and password:
        return Credentials(username=username, password=password)
    return None


class ConfigManager:
    """Resolves per-application configuration.

    Workflows receive an instance of this (or any object with a compatible
    ``get_config``) instead of reaching for process-wide state.
    """

    def __init__(self, configs: Optional[Dict[str, ApplicationConfig]] = None):
        self._configs: Dict[str, ApplicationConfig] = dict(configs or {})

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ConfigManager":
        settings = settings or get_settings()
        return cls({
            "webapp": ApplicationConfig(
                name="webapp",
                base_url=settings.WEBAPP_BASE_URL,
                api_url=settings.WEBAPP_API_URL,
                credentials=_credentials(settings.WEBAPP_USERNAME, settings.WEBAPP_PASSWORD),
            ),
            "admin": ApplicationConfig(
                name="admin",
                base_url=settings.ADMIN_BASE_URL,
                api_url=settings.ADMIN_API_URL,
                credentials=_credentials(settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD),
            ),
            "mcp": ApplicationConfig(
                name="mcp",
                base_url=settings.MCP_BASE_URL,
                api_url=settings.MCP_API_URL,
            ),
        })

    @property
    def applications(self) -> List[str]:
        return sorted(self._configs)

    def get_config(self, app: str) -> ApplicationConfig:
        config = self._configs.get(app)
        if config is None:
            raise ConfigurationError(f"Configuration not found for application: {app}", application=app)
        return config

    def register(self, config: ApplicationConfig) -> None:
        self._configs[config.name] = config

    def validate_all(self) -> Dict[str, ConfigValidation]:
        return {name: config.validate() for name, config in self._configs.items()}
