from __future__ import annotations

from decimal import Decimal
from functools import cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.currency import Currency, normalize_currency


class AppSettings(BaseSettings):
    display_currency: Currency = Currency.ILS
    base_currency: Currency = Currency.ILS
    data_dir: Path = Path("data")
    log_level: str = "WARNING"
    dust_threshold: Decimal = Decimal("1e-9")
    material_value_threshold: Decimal = Decimal("1e-6")
    max_price_age_days: int | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PORTFOLIO_",
        extra="ignore",
    )

    @field_validator("display_currency", "base_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> object:
        if isinstance(value, str):
            return normalize_currency(value)
        return value


@cache
def config() -> AppSettings:
    return AppSettings()
