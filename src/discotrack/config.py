from __future__ import annotations

from pathlib import Path
from functools import lru_cache

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from discotrack.errors import ConfigError
from discotrack.models.schemas import ServiceDescriptor, WebhookDestination, WebhookRoute


ROOT_DIR = Path(__file__).resolve().parent.parent.parent

# In Docker, the package is installed to site-packages but config lives at /app/config.
# Fall back to the source-tree-relative path for local development.
_docker_config = Path("/app/config")
CONFIG_DIR = _docker_config if _docker_config.exists() else ROOT_DIR / "config"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Tracker configuration (services, paths, webhooks)
    config_path: str = str(CONFIG_DIR / "config.yaml")

    # Change log database, defaults to <log_path>/changes.db
    database_url: str = ""

    # Local read API
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    log_level: str = "info"

    # HTTP timeouts (seconds)
    fetch_timeout: float = 30.0
    webhook_timeout: float = 15.0

    # Discord rate limiting
    webhook_rate_limit_retries: int = 2
    webhook_max_retry_after: float = 10.0

    shutdown_grace_seconds: float = 30.0

    def load_yaml_config(self) -> dict:
        settings_path = Path(self.config_path)
        if settings_path.exists():
            try:
                with open(settings_path) as f:
                    return yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Failed to parse {settings_path}: {e}") from e
        return {}


def _role_id_to_str(value):
    # Discord snowflakes are written unquoted in YAML and parse as ints
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class ServiceConfig(BaseModel):
    service: str = Field(min_length=1)
    key: str | None = None
    name: str | None = None
    endpoint: str | None = None
    visibility_label: str | None = None
    format: str = "rest"

    def endpoint_url(self) -> str:
        return self.endpoint or f"https://{self.service}/$discovery/{self.format}"


class TagMentionRoleId(BaseModel):
    tag: str
    role_id: str

    @field_validator("role_id", mode="before")
    @classmethod
    def coerce_role_id(cls, value):
        return _role_id_to_str(value)


class ServiceWebhook(BaseModel):
    service: str
    name: str | None = None
    webhook_url: str


class DiscordWebhookConfig(BaseModel):
    tracker_api_url: str = "http://localhost:3000"
    error_webhook_url: str | None = None
    error_mention_role_id: str | None = None
    skip_revision_only_changes: bool = False
    tag_mention_role_ids: list[TagMentionRoleId] = []
    services: list[ServiceWebhook] = []

    @field_validator("error_mention_role_id", mode="before")
    @classmethod
    def coerce_error_role(cls, value):
        return _role_id_to_str(value)

    def to_route(self) -> WebhookRoute:
        destinations: dict[str, list[WebhookDestination]] = {}
        for hook in self.services:
            destinations.setdefault(hook.service, []).append(
                WebhookDestination(name=hook.name or hook.service, webhook_url=hook.webhook_url)
            )
        return WebhookRoute(
            destinations={k: tuple(v) for k, v in destinations.items()},
            tag_mention_role_ids={m.tag: m.role_id for m in self.tag_mention_role_ids},
            error_webhook_url=self.error_webhook_url or None,
            error_mention_role_id=self.error_mention_role_id or None,
            skip_revision_only_changes=self.skip_revision_only_changes,
            tracker_api_url=self.tracker_api_url.rstrip("/"),
        )


class TrackerConfig(BaseModel):
    storage_path: Path
    log_path: Path
    check_interval: float = Field(gt=0)
    services: list[ServiceConfig] = Field(min_length=1)
    enable_discord_webhooks: bool = False
    discord_webhook_config: DiscordWebhookConfig | None = None

    @model_validator(mode="after")
    def check_unique_services(self) -> TrackerConfig:
        seen: set[str] = set()
        for svc in self.services:
            if svc.service in seen:
                raise ValueError(f"Service configured more than once: {svc.service}")
            seen.add(svc.service)
        return self

    def service_descriptors(self) -> list[ServiceDescriptor]:
        webhook_names: dict[str, str] = {}
        if self.discord_webhook_config:
            for hook in self.discord_webhook_config.services:
                if hook.name:
                    webhook_names.setdefault(hook.service, hook.name)

        return [
            ServiceDescriptor(
                service_id=svc.service,
                name=svc.name or webhook_names.get(svc.service, svc.service),
                endpoint=svc.endpoint_url(),
                api_key=svc.key,
                visibility_label=svc.visibility_label,
            )
            for svc in self.services
        ]

    def webhook_route(self) -> WebhookRoute | None:
        """Return the routing table, or None when Discord notifications are disabled."""
        if not self.enable_discord_webhooks or self.discord_webhook_config is None:
            return None
        return self.discord_webhook_config.to_route()

    def database_url(self, settings: Settings) -> str:
        if settings.database_url:
            return settings.database_url
        return f"sqlite+aiosqlite:///{self.log_path / 'changes.db'}"


def load_tracker_config(settings: Settings | None = None) -> TrackerConfig:
    """Load and validate the YAML tracker configuration. Raises ConfigError."""
    settings = settings or get_settings()
    if not Path(settings.config_path).exists():
        raise ConfigError(f"Configuration file not found: {settings.config_path}")

    raw = settings.load_yaml_config()
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration root must be a mapping: {settings.config_path}")

    try:
        return TrackerConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {settings.config_path}: {e}") from e


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_tracker_config() -> TrackerConfig:
    return load_tracker_config(get_settings())
