from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="FIFO_", extra="ignore")

    app_name: str = "FIFO Cost-Layer Inventory Ledger"
    env: str = "dev"
    log_level: str = "INFO"

    # Ledger persistence backend: json | sql
    ledger_backend: str = "json"
    data_dir: Path = Path("./data")
    ledgers_filename: str = "fifo_inventory.json"
    history_filename: str = "price_history.json"
    database_url: str = "sqlite+pysqlite:///./fifo_ledger.db"
    autosave: bool = True

    large_variance_ratio: Decimal = Field(
        default=Decimal("0.5"),
        ge=0,
        description="Count variance above this share of the system quantity is flagged",
    )
    count_excess_multiplier: Decimal = Field(
        default=Decimal("2"),
        ge=1,
        description="Counted quantity above this multiple of the system quantity is flagged",
    )
    stale_lot_days: int = Field(default=30, ge=0)

    price_match_below_pct: Decimal = Field(default=Decimal("1"), ge=0)
    price_high_from_pct: Decimal = Field(default=Decimal("5"), ge=0)
    price_critical_from_pct: Decimal = Field(default=Decimal("10"), ge=0)

    report_top_n: int = Field(default=5, ge=1)
    history_default_limit: int = Field(default=20, ge=1)

    def model_post_init(self, __context) -> None:
        if self.ledger_backend not in {"json", "sql"}:
            raise ValueError(f"unsupported ledger backend: {self.ledger_backend}")

        breakpoints = (self.price_match_below_pct, self.price_high_from_pct, self.price_critical_from_pct)
        if list(breakpoints) != sorted(breakpoints):
            raise ValueError(
                "price severity breakpoints must be ascending: "
                "FIFO_PRICE_MATCH_BELOW_PCT <= FIFO_PRICE_HIGH_FROM_PCT <= FIFO_PRICE_CRITICAL_FROM_PCT"
            )

    @property
    def ledgers_path(self) -> Path:
        return self.data_dir / self.ledgers_filename

    @property
    def history_path(self) -> Path:
        return self.data_dir / self.history_filename


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
