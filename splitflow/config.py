"""
Pipeline configuration management.
Uses pydantic-settings for environment variable parsing with validation.

Local overrides can be placed in a .env file (never commit it to git).
See .env.example for the available variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List


class Settings(BaseSettings):
    """
    Pipeline settings loaded from environment variables.

    Every value has a default, so the pipeline runs without any environment.

    Notable variables:
    - ATTRIBUTION_WINDOW_DAYS: How long a visitor session stays attributable
    - DEFAULT_ATTRIBUTION_MODEL: Model used when a conversion does not name one
    - FUNNEL_RETENTION_DAYS / ATTRIBUTION_RETENTION_DAYS: Cleanup cutoffs
    - LOG_LEVEL: Logging verbosity
    """

    service_name: str = Field(default="splitflow")
    log_level: str = Field(default="INFO")

    default_currency: str = Field(
        default="USD",
        description="ISO 4217 code used when an event carries no currency"
    )

    attribution_window_days: int = Field(
        default=30,
        ge=1,
        description="Lifetime of a visitor session for attribution purposes"
    )
    default_attribution_model: str = Field(
        default="first_touch",
        description="Attribution model applied to funnel conversions"
    )
    attribution_lookback_days: int = Field(
        default=30,
        ge=0,
        description="Maximum touchpoint age eligible for attribution"
    )

    time_decay_rate: float = Field(default=0.7, gt=0, le=1)
    time_decay_half_life_days: float = Field(default=7.0, gt=0)

    position_first_weight: float = Field(default=0.4, ge=0, le=1)
    position_last_weight: float = Field(default=0.4, ge=0, le=1)
    position_middle_weight: float = Field(default=0.2, ge=0, le=1)

    high_value_actions: List[str] = Field(
        default=["form_submit", "video_complete", "button_click"],
        description="Interactions that are also recorded as marketing touchpoints"
    )

    funnel_retention_days: int = Field(default=30, ge=1)
    attribution_retention_days: int = Field(default=90, ge=1)
    cleanup_interval_seconds: int = Field(default=3600, ge=1)

    default_required_sample_size: int = Field(
        default=1000,
        description="Sample size reported when the power calculation is undefined"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()
