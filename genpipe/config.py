"""Configuration management with YAML and environment variable support.

Settings are built once at process start with ``load_settings()`` and passed
by reference into the invoker, adapters and pipeline stages. There is no
module-level settings instance.
"""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from genpipe.schemas.generation import Provider


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def __init__(self, settings_cls: type[BaseSettings], yaml_path: Path = Path("config.yaml")):
        super().__init__(settings_cls)
        self.yaml_path = Path(yaml_path)

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        if not self.yaml_path.exists():
            return {}

        with open(self.yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class ProvidersConfig(BaseModel):
    """Provider credentials and model identifiers."""

    gemini_api_key: Optional[str] = None
    seedream_api_key: Optional[str] = None
    seedream_base_url: str = "https://ark.ap-southeast.bytepluses.com/api/v3"
    text_model: str = "gemini-3-pro-preview"
    image_model_a: str = "gemini-3-pro-image-preview"
    image_model_b: str = "seedream-4-5-251128"
    video_model: str = "veo-3.1-fast-generate-preview"


class TimeoutsConfig(BaseModel):
    """Per-provider logical deadlines in milliseconds."""

    text_model_ms: int = Field(default=120_000, gt=0)
    image_model_a_ms: int = Field(default=120_000, gt=0)
    image_model_b_ms: int = Field(default=60_000, gt=0)
    video_model_ms: int = Field(default=600_000, gt=0)
    download_timeout_ms: int = Field(default=30_000, gt=0)


class RetriesConfig(BaseModel):
    """Retry caps and backoff bounds."""

    text_model: int = Field(default=3, ge=0)
    image_model_a: int = Field(default=2, ge=0)
    image_model_b: int = Field(default=1, ge=0)
    video_model: int = Field(default=2, ge=0)
    base_delay_ms: int = Field(default=1_000, gt=0)
    max_delay_ms: int = Field(default=10_000, gt=0)


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    default_duration: int = 4
    allowed_durations: list[int] = Field(default_factory=lambda: [4, 6, 8])
    concurrency: int = Field(default=2, ge=1)
    video_poll_interval_ms: int = Field(default=10_000, gt=0)
    truncatable_fields: list[str] = Field(default_factory=lambda: ["description"])

    @field_validator("allowed_durations")
    @classmethod
    def sort_durations(cls, v):
        """Keep durations ascending so snapping can walk them in order."""
        if not v or any(d <= 0 for d in v):
            raise ValueError("allowed_durations must be non-empty positive ints")
        return sorted(v)


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Explicit keyword arguments to ``load_settings()``
    2. Environment variables (prefix: GENPIPE_, delimiter: __)
    3. .env file
    4. YAML file (config.yaml, or the ``config_path`` given to ``load_settings()``)
    5. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="GENPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    retries: RetriesConfig = Field(default_factory=RetriesConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    config_file: ClassVar[Path] = Path("config.yaml")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, settings_cls.config_file),
        )

    def timeout_for(self, provider: Provider) -> int:
        """Default ``timeout_ms`` for a provider."""
        return getattr(self.timeouts, f"{provider.field_name}_ms")

    def retries_for(self, provider: Provider) -> int:
        """Default ``max_retries`` for a provider."""
        return getattr(self.retries, provider.field_name)

    def model_for(self, provider: Provider) -> str:
        """Default model id for a provider."""
        return getattr(self.providers, provider.field_name)


def load_settings(config_path: Optional[Path] = None, **overrides) -> Settings:
    """Build the process settings once; pass the result by reference.

    ``config_path`` replaces ./config.yaml for this call only.
    """
    if config_path is None:
        return Settings(**overrides)

    class FileSettings(Settings):
        config_file: ClassVar[Path] = Path(config_path)

    return FileSettings(**overrides)
