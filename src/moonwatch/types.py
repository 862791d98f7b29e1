"""Shared domain types for admission, risk gating and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class ExecutionErrorKind(str, Enum):
    """How far a failed order got before giving up."""

    NONE = "none"
    FAILED = "failed"  # no transaction landed
    UNCERTAIN = "uncertain"  # sent, finality never observed; funds may have moved


class BreakerState(str, Enum):
    NORMAL = "normal"
    TRIPPED = "tripped"


class CircuitBreakerReason(str, Enum):
    MAX_DRAWDOWN = "max_drawdown"
    MAX_DAILY_LOSS = "max_daily_loss"


class TradeEventKind(str, Enum):
    """Fire-and-forget notifications for the alerting side."""

    CIRCUIT_BREAKER = "circuit_breaker"
    CIRCUIT_BREAKER_RESET = "circuit_breaker_reset"
    EMERGENCY_STOP = "emergency_stop"
    EMERGENCY_STOP_RESET = "emergency_stop_reset"
    ORDER_FILLED = "order_filled"
    ORDER_FAILED = "order_failed"


@dataclass(frozen=True, slots=True)
class Candidate:
    """A token surfaced by discovery as worth trading."""

    token_address: str
    confidence: float
    suggested_size_hint: float | None = None
    pair_address: str | None = None
    detected_at: str = field(default_factory=utc_now)


@dataclass(slots=True)
class DispatchSlot:
    """Per-token admission bookkeeping; times come from the coordinator clock."""

    token_address: str
    enqueued_at: float
    last_dispatch_at: float | None = None
    pending: bool = False
    in_flight: bool = False


@dataclass(slots=True)
class RiskState:
    """Global account state mutated only by the risk gate."""

    current_balance: float
    high_water_mark: float
    daily_start_balance: float
    drawdown_pct: float = 0.0
    daily_loss_pct: float = 0.0
    open_position_count: int = 0
    breaker: BreakerState = BreakerState.NORMAL
    emergency_stop: bool = False
    initial_balance: float = 0.0
    trade_count: int = 0
    winning_trades: int = 0

    @classmethod
    def from_balance(cls, balance: float) -> RiskState:
        return cls(
            current_balance=balance,
            high_water_mark=balance,
            daily_start_balance=balance,
            initial_balance=balance,
        )

    @property
    def circuit_breaker_tripped(self) -> bool:
        return self.breaker is BreakerState.TRIPPED


@dataclass(frozen=True, slots=True)
class RiskMetrics:
    """Read-only snapshot of the risk state for reporting."""

    current_balance: float
    high_water_mark: float
    daily_start_balance: float
    drawdown_pct: float
    daily_loss_pct: float
    daily_pnl: float
    realized_pnl: float
    open_position_count: int
    available_positions: int
    circuit_breaker_tripped: bool
    emergency_stop: bool
    trade_count: int
    win_rate_pct: float


@dataclass(slots=True)
class RiskCheckResult:
    """Result of a position admission check."""

    allowed: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Position:
    """An open holding created by a settled buy."""

    token_address: str
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    entry_signature: str | None = None
    pair_address: str | None = None
    entry_timestamp: str = field(default_factory=utc_now)
    last_price: float | None = None
    unrealized_pnl: float = 0.0

    @property
    def cost_basis(self) -> float:
        return self.entry_price * self.quantity


@dataclass(frozen=True, slots=True)
class Order:
    """A single execution request.

    ``size_native_units`` is in human units of the input asset: the base
    currency for buys, the token itself for sells.
    """

    token_address: str
    side: Side
    size_native_units: float
    max_slippage_bps: int


@dataclass(frozen=True, slots=True)
class QuoteResult:
    """A priced route; amounts are raw ledger units."""

    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    route: dict[str, Any] = field(default_factory=dict)
    fetched_at: float = 0.0


@dataclass(frozen=True, slots=True)
class ConfirmationStatus:
    finalized: bool
    err: Any = None

    @property
    def failed(self) -> bool:
        return self.err is not None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Terminal outcome of one order; amounts are human units."""

    success: bool
    side: Side
    token_address: str
    signature: str | None = None
    input_amount: float | None = None
    output_amount: float | None = None
    execution_price: float | None = None
    error: str | None = None
    error_kind: ExecutionErrorKind = ExecutionErrorKind.NONE
    attempts: int = 0
    timestamp: str = field(default_factory=utc_now)

    @property
    def uncertain(self) -> bool:
        return self.error_kind is ExecutionErrorKind.UNCERTAIN

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "side": self.side.value,
            "token_address": self.token_address,
            "signature": self.signature,
            "input_amount": self.input_amount,
            "output_amount": self.output_amount,
            "execution_price": self.execution_price,
            "error": self.error,
            "error_kind": self.error_kind.value,
            "attempts": self.attempts,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class TradeEvent:
    kind: TradeEventKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)
