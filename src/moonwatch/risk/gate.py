"""Global risk gate: admission predicate, drawdown tracking and circuit breaker."""

from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable

from moonwatch.config import Settings
from moonwatch.notify import Notifier, notify_safely
from moonwatch.types import (
    BreakerState,
    CircuitBreakerReason,
    RiskCheckResult,
    RiskMetrics,
    RiskState,
    TradeEvent,
    TradeEventKind,
)
from moonwatch.utils.logging import get_logger, log_risk_event


class RiskGate:
    """Single authority over whether a trade is allowed.

    The breaker moves NORMAL -> TRIPPED only from :meth:`record_trade` and
    back only through :meth:`reset_circuit_breaker`. The emergency stop is an
    independent flag that overrides the breaker while raised.
    """

    def __init__(
        self,
        state: RiskState,
        *,
        max_drawdown_pct: float,
        max_daily_loss_pct: float,
        max_positions: int,
        max_position_size: float,
        emergency_stop_threshold_pct: float | None = None,
        max_trades_per_minute: int | None = None,
        max_trades_per_hour: int | None = None,
        max_trades_per_day: int | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state
        self._max_drawdown_pct = max_drawdown_pct
        self._max_daily_loss_pct = max_daily_loss_pct
        self._max_positions = max_positions
        self._max_position_size = max_position_size
        self._emergency_stop_threshold_pct = emergency_stop_threshold_pct
        self._notifier = notifier
        self._clock = clock
        # (window seconds, limit); a None limit disables the window.
        self._rate_limits = [
            (window, limit)
            for window, limit in (
                (60.0, max_trades_per_minute),
                (3600.0, max_trades_per_hour),
                (86400.0, max_trades_per_day),
            )
            if limit is not None
        ]
        self._open_times: deque[float] = deque()
        self._logger = get_logger("moonwatch.risk.gate")
        self._recompute()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        state: RiskState,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> RiskGate:
        return cls(
            state,
            max_drawdown_pct=settings.max_drawdown_pct,
            max_daily_loss_pct=settings.max_daily_loss_pct,
            max_positions=settings.max_positions,
            max_position_size=settings.max_position_size,
            emergency_stop_threshold_pct=settings.emergency_stop_threshold_pct,
            max_trades_per_minute=settings.max_trades_per_minute,
            max_trades_per_hour=settings.max_trades_per_hour,
            max_trades_per_day=settings.max_trades_per_day,
            notifier=notifier,
            clock=clock,
        )

    @property
    def state(self) -> RiskState:
        return self._state

    def check_open_position(self, proposed_size: float) -> RiskCheckResult:
        """Evaluate a proposed position without changing any state."""
        reasons: list[str] = []
        state = self._state
        if state.emergency_stop:
            reasons.append("emergency_stop_active")
        if state.breaker is BreakerState.TRIPPED:
            reasons.append("circuit_breaker_tripped")
        if state.open_position_count >= self._max_positions:
            reasons.append("max_positions_reached")
        if proposed_size > self._max_position_size:
            reasons.append("max_position_size_exceeded")
        if not proposed_size > 0:
            reasons.append("invalid_position_size")
        if self._trade_rate_exceeded(self._clock()):
            reasons.append("trade_rate_exceeded")
        return RiskCheckResult(allowed=not reasons, reasons=reasons)

    def can_open_position(self, proposed_size: float) -> bool:
        return self.check_open_position(proposed_size).allowed

    def record_trade(self, pnl: float) -> None:
        """Settle realized PnL and trip the breaker on limit breach."""
        if not math.isfinite(pnl):
            raise ValueError(f"pnl_must_be_finite: {pnl}")
        state = self._state
        state.current_balance += pnl
        state.trade_count += 1
        if pnl > 0:
            state.winning_trades += 1
        state.high_water_mark = max(state.high_water_mark, state.current_balance)
        self._recompute()

        self._logger.info(
            "trade_recorded",
            pnl=pnl,
            balance=state.current_balance,
            drawdown_pct=round(state.drawdown_pct, 4),
            daily_loss_pct=round(state.daily_loss_pct, 4),
        )

        if state.breaker is BreakerState.NORMAL:
            if state.daily_loss_pct >= self._max_daily_loss_pct:
                self._trip(
                    CircuitBreakerReason.MAX_DAILY_LOSS,
                    f"daily loss {state.daily_loss_pct:.2f}% >= {self._max_daily_loss_pct}%",
                )
            elif state.drawdown_pct >= self._max_drawdown_pct:
                self._trip(
                    CircuitBreakerReason.MAX_DRAWDOWN,
                    f"drawdown {state.drawdown_pct:.2f}% >= {self._max_drawdown_pct}%",
                )

        threshold = self._emergency_stop_threshold_pct
        if threshold is not None and state.daily_loss_pct >= threshold and not state.emergency_stop:
            self.set_emergency_stop(
                True,
                reason=f"daily loss {state.daily_loss_pct:.2f}% >= emergency threshold {threshold}%",
            )

    def reset_circuit_breaker(self) -> None:
        if self._state.breaker is BreakerState.NORMAL:
            return
        self._state.breaker = BreakerState.NORMAL
        log_risk_event(self._logger, event_type="circuit_breaker", action="reset")
        notify_safely(self._notifier, TradeEvent(TradeEventKind.CIRCUIT_BREAKER_RESET))

    def set_emergency_stop(self, active: bool, reason: str = "manual") -> None:
        if self._state.emergency_stop == active:
            return
        self._state.emergency_stop = active
        if active:
            log_risk_event(self._logger, event_type="emergency_stop", action="raised", reason=reason)
            notify_safely(
                self._notifier,
                TradeEvent(TradeEventKind.EMERGENCY_STOP, {"reason": reason}),
            )
        else:
            log_risk_event(self._logger, event_type="emergency_stop", action="cleared")
            notify_safely(self._notifier, TradeEvent(TradeEventKind.EMERGENCY_STOP_RESET))

    def roll_day(self) -> None:
        """Start a new trading day from the current balance.

        Must be called once per day by a scheduler; otherwise daily loss
        keeps compounding across days.
        """
        self._state.daily_start_balance = self._state.current_balance
        self._recompute()
        self._logger.info("trading_day_rolled", daily_start_balance=self._state.daily_start_balance)

    def register_position_opened(self) -> None:
        """Take a position slot and count the open against the trade rate."""
        self._state.open_position_count += 1
        now = self._clock()
        self._open_times.append(now)
        while self._open_times and now - self._open_times[0] >= 86400.0:
            self._open_times.popleft()

    def register_position_closed(self) -> None:
        self._state.open_position_count = max(0, self._state.open_position_count - 1)

    def get_metrics(self) -> RiskMetrics:
        state = self._state
        win_rate = state.winning_trades / state.trade_count * 100 if state.trade_count else 0.0
        return RiskMetrics(
            current_balance=state.current_balance,
            high_water_mark=state.high_water_mark,
            daily_start_balance=state.daily_start_balance,
            drawdown_pct=state.drawdown_pct,
            daily_loss_pct=state.daily_loss_pct,
            daily_pnl=state.current_balance - state.daily_start_balance,
            realized_pnl=state.current_balance - state.initial_balance,
            open_position_count=state.open_position_count,
            available_positions=max(0, self._max_positions - state.open_position_count),
            circuit_breaker_tripped=state.circuit_breaker_tripped,
            emergency_stop=state.emergency_stop,
            trade_count=state.trade_count,
            win_rate_pct=win_rate,
        )

    def _trade_rate_exceeded(self, now: float) -> bool:
        for window, limit in self._rate_limits:
            recent = sum(1 for opened_at in self._open_times if now - opened_at < window)
            if recent >= limit:
                return True
        return False

    def _recompute(self) -> None:
        state = self._state
        if state.high_water_mark > 0:
            drawdown = (state.high_water_mark - state.current_balance) / state.high_water_mark * 100
        else:
            drawdown = 0.0
        state.drawdown_pct = max(0.0, drawdown)

        if state.daily_start_balance > 0:
            daily_loss = (state.daily_start_balance - state.current_balance) / state.daily_start_balance * 100
        else:
            daily_loss = 0.0
        state.daily_loss_pct = max(0.0, daily_loss)

    def _trip(self, reason: CircuitBreakerReason, message: str) -> None:
        self._state.breaker = BreakerState.TRIPPED
        log_risk_event(
            self._logger,
            event_type="circuit_breaker",
            action="tripped",
            reason=reason.value,
            message=message,
        )
        notify_safely(
            self._notifier,
            TradeEvent(
                TradeEventKind.CIRCUIT_BREAKER,
                {"reason": reason.value, "message": message},
            ),
        )
