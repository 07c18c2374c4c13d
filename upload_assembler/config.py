import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

_CONFIG_PATH = os.getenv("UPLOAD_ASSEMBLER_CONFIG", "config.toml")
_ENV_PATH = os.getenv("UPLOAD_ASSEMBLER_ENV", ".env")


class StagingSettings(BaseModel):
    directory: Path = Path("uploads")
    sidecar_suffix: str = ".json"


class LimitSettings(BaseModel):
    max_total_parts: int = 64
    max_number_probes: int = 10000


class AssemblySettings(BaseModel):
    expire_after: int = 24 * 3600  # abandoned/stale records, seconds
    completed_ttl: int = 3600  # how long finished group ids are remembered
    verify_size: bool = True
    copy_chunk_size: int = 10 * 1024 * 1024  # 10MB


class WatchSettings(BaseModel):
    poll_interval: float = 1.0
    stable_intervals: int = 3


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        toml_file=_CONFIG_PATH,
        env_file=_ENV_PATH,
    )

    staging: StagingSettings = Field(default_factory=StagingSettings)
    mount_path: Path = Field(default=Path("files"))
    completion_source: Literal["hooks", "watch"] = "hooks"
    hook_token: Optional[str] = None

    limits: LimitSettings = Field(default_factory=LimitSettings)
    assembly: AssemblySettings = Field(default_factory=AssemblySettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)

    host: str = "0.0.0.0"
    port: int = 1080
    logs_dir: Path = Field(default=Path("logs"))
    log_level: str = "DEBUG"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Source order: init args > OS env > .env > config.toml > secrets
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


settings = Settings()
