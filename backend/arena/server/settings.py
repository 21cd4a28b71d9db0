"""Arena configuration via environment variables."""

from __future__ import annotations

from typing import TYPE_CHECKING, Self

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from arena.logic.outcome import SettlementPolicy
from shared.validators import StringListEnvSettingsSource, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


class ArenaSettings(BaseSettings):
    model_config = {"env_prefix": "ARENA_"}

    database_path: str = Field(default="backend/arena.db", min_length=1)
    log_dir: str | None = "backend/logs/arena"
    cors_origins: list[str] = []

    # Optimistic concurrency: attempts per entity before ConcurrentUpdateExhausted.
    max_update_retries: int = Field(default=5, ge=1, le=50)
    settlement_workers: int = Field(default=4, ge=1)
    repair_interval_seconds: float = Field(default=30, ge=1)
    repair_batch_size: int = Field(default=100, ge=1)

    # Settlement policy: whether `timeout` outcomes move ratings.
    settle_timeouts: bool = False

    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=100, ge=1)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v, allow_empty=True)

    @model_validator(mode="after")
    def _check_page_sizes(self) -> Self:
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size must not exceed max_page_size")
        return self

    @property
    def settlement_policy(self) -> SettlementPolicy:
        return SettlementPolicy(settle_timeouts=self.settle_timeouts)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, StringListEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings)
