"""Configuration loading from environment variables and the .env file."""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"


class RunMode(str, Enum):
    """Run mode."""

    PAPER = "paper"  # simulated fills
    LIVE = "live"  # signed transactions on-chain


class LogFormat(str, Enum):
    """Log output format."""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """System settings.

    Loaded from environment variables and the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== Run mode ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="Run mode: paper or live")

    # ==================== Endpoints ====================
    solana_rpc_url: str = Field(default="", description="Ledger JSON-RPC endpoint")
    jupiter_api_url: str = Field(
        default="https://quote-api.jup.ag/v6",
        description="Swap aggregator base URL",
    )
    wallet_private_key: str = Field(default="", description="Base58 wallet secret key")
    base_mint: str = Field(default=WRAPPED_SOL_MINT, description="Mint positions are funded in")
    confirmation_commitment: Literal["confirmed", "finalized"] = Field(
        default="confirmed",
        description="Commitment level treated as final",
    )

    # ==================== Admission ====================
    max_concurrent: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Maximum tokens dispatched at the same time",
    )
    token_cooldown_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Minimum delay before the same token is dispatched again",
    )
    min_candidate_confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Candidates below this confidence are ignored",
    )

    # ==================== Risk parameters ====================
    initial_balance: float = Field(default=1000.0, gt=0.0, description="Starting balance")
    max_drawdown_pct: float = Field(
        default=20.0,
        gt=0.0,
        le=100.0,
        description="Drawdown from the high-water mark that trips the breaker (percent)",
    )
    max_daily_loss_pct: float = Field(
        default=10.0,
        gt=0.0,
        le=100.0,
        description="Loss since the start of day that trips the breaker (percent)",
    )
    emergency_stop_threshold_pct: float | None = Field(
        default=15.0,
        gt=0.0,
        le=100.0,
        description="Daily loss that raises the emergency stop (percent); unset disables it",
    )
    max_positions: int = Field(default=5, ge=1, le=100, description="Maximum open positions")
    max_position_size: float = Field(
        default=1.0,
        gt=0.0,
        description="Largest single position in base units",
    )
    default_position_size: float = Field(
        default=0.1,
        gt=0.0,
        description="Position size used when a candidate carries no size hint",
    )
    max_trades_per_minute: int = Field(default=5, ge=1, description="Position opens allowed per minute")
    max_trades_per_hour: int = Field(default=30, ge=1, description="Position opens allowed per hour")
    max_trades_per_day: int = Field(default=100, ge=1, description="Position opens allowed per day")
    stop_loss_pct: float = Field(default=20.0, gt=0.0, lt=100.0, description="Stop loss (percent)")
    take_profit_pct: float = Field(default=50.0, gt=0.0, description="Take profit (percent)")

    # ==================== Execution ====================
    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per order")
    retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Backoff base; attempt n waits base * n",
    )
    confirm_attempts: int = Field(default=5, ge=1, le=60, description="Confirmation polls")
    confirm_delay_seconds: float = Field(default=3.0, ge=0.0, description="Delay between polls")
    call_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for each quote/simulate/submit call",
    )
    default_slippage_bps: int = Field(
        default=100,
        ge=1,
        le=5000,
        description="Slippage tolerance (basis points)",
    )

    # ==================== Logging ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="Log output format",
    )

    # ==================== Storage ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="Trade journal directory",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """Convert strings to Path objects."""
        return Path(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_position_sizes(self) -> "Settings":
        """A default position larger than the cap would always be rejected."""
        if self.default_position_size > self.max_position_size:
            raise ValueError("default_position_size must not exceed max_position_size")
        return self

    def ensure_directories(self) -> None:
        """Make sure required directories exist."""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """Validate settings needed for live mode, returning missing keys."""
        missing = []
        if not self.solana_rpc_url:
            missing.append("SOLANA_RPC_URL")
        if not self.wallet_private_key:
            missing.append("WALLET_PRIVATE_KEY")
        return missing


# Global settings instance (lazily created)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings."""
    global _settings
    _settings = Settings()
    return _settings
