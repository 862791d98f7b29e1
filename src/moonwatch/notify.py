"""Notification hand-off for risk and order events."""

from __future__ import annotations

from collections.abc import Callable

from moonwatch.types import TradeEvent, TradeEventKind
from moonwatch.utils.logging import get_logger

Notifier = Callable[[TradeEvent], None]

_WARNING_KINDS = {
    TradeEventKind.CIRCUIT_BREAKER,
    TradeEventKind.EMERGENCY_STOP,
    TradeEventKind.ORDER_FAILED,
}


class LoggingNotifier:
    """Default notifier: writes every event to the structured log."""

    def __init__(self) -> None:
        self._logger = get_logger("moonwatch.notify")

    def __call__(self, event: TradeEvent) -> None:
        level = "warning" if event.kind in _WARNING_KINDS else "info"
        getattr(self._logger, level)(
            "trade_event",
            kind=event.kind.value,
            event_timestamp=event.timestamp,
            **event.payload,
        )


def notify_safely(notifier: Notifier | None, event: TradeEvent) -> None:
    """Deliver one event; delivery failures are logged, never raised."""
    if notifier is None:
        return
    try:
        notifier(event)
    except Exception:  # noqa: BLE001 - delivery must not abort a trade decision.
        get_logger("moonwatch.notify").exception("notification_failed", kind=event.kind.value)
