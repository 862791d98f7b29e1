"""Trading engine: wires admission, risk gating and execution together."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine
from dataclasses import asdict
from typing import Any

from moonwatch.admission.coordinator import AdmissionCoordinator
from moonwatch.config import Settings
from moonwatch.exec.client import SwapClient
from moonwatch.exec.pipeline import ExecutionPipeline, Sleep
from moonwatch.journal.store import JournalStore
from moonwatch.notify import LoggingNotifier, Notifier, notify_safely
from moonwatch.risk.gate import RiskGate
from moonwatch.types import (
    Candidate,
    ExecutionResult,
    Order,
    Position,
    RiskState,
    Side,
    TradeEvent,
    TradeEventKind,
)
from moonwatch.utils.logging import get_logger, log_risk_event


class EngineNotRunningError(RuntimeError):
    """Raised when the engine is used outside start()/stop()."""


class TradingEngine:
    """Owns positions and the risk state for one start/stop lifetime.

    Candidates go through the admission coordinator; each dispatch runs as
    its own task that asks the risk gate, executes the buy and always
    reports completion back to the coordinator. Exits bypass admission so a
    stop loss is never held back by a token cooldown.
    """

    def __init__(
        self,
        settings: Settings,
        client: SwapClient,
        *,
        notifier: Notifier | None = None,
        journal: JournalStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client
        self._notifier = notifier if notifier is not None else LoggingNotifier()
        self._journal = journal
        self._clock = clock
        self._sleep = sleep
        self._logger = get_logger("moonwatch.engine")

        self._positions: dict[str, Position] = {}
        self._candidates: dict[str, Candidate] = {}
        self._closing: set[str] = set()
        self._uncertain: dict[str, ExecutionResult] = {}
        self._uncertain_orders: dict[str, Order] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._running = False

        self._risk_gate: RiskGate | None = None
        self._coordinator: AdmissionCoordinator | None = None
        self._pipeline: ExecutionPipeline | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def risk_gate(self) -> RiskGate:
        if self._risk_gate is None:
            raise EngineNotRunningError("engine_not_started")
        return self._risk_gate

    @property
    def coordinator(self) -> AdmissionCoordinator:
        if self._coordinator is None:
            raise EngineNotRunningError("engine_not_started")
        return self._coordinator

    @property
    def positions(self) -> dict[str, Position]:
        return dict(self._positions)

    @property
    def uncertain(self) -> dict[str, ExecutionResult]:
        return dict(self._uncertain)

    async def start(self) -> None:
        if self._running:
            return
        loop = asyncio.get_running_loop()
        state = RiskState.from_balance(self._settings.initial_balance)
        self._risk_gate = RiskGate.from_settings(
            self._settings,
            state,
            notifier=self._on_risk_event,
            clock=self._clock,
        )
        self._pipeline = ExecutionPipeline.from_settings(self._settings, self._client, sleep=self._sleep)
        self._coordinator = AdmissionCoordinator(
            self._on_dispatch,
            max_concurrent=self._settings.max_concurrent,
            cooldown_seconds=self._settings.token_cooldown_seconds,
            clock=self._clock,
            scheduler=loop.call_later,
        )
        self._running = True
        self._logger.info(
            "engine_started",
            mode=self._settings.mode.value,
            balance=state.current_balance,
            max_concurrent=self._settings.max_concurrent,
        )

    async def stop(self) -> None:
        """Stop admitting work and wait for in-flight orders to finish.

        Submitted transactions cannot be recalled, so running tasks are
        awaited rather than cancelled.
        """
        if not self._running:
            return
        self._running = False
        await self.wait_idle()
        metrics = self.risk_gate.get_metrics()
        self._logger.info(
            "engine_stopped",
            balance=metrics.current_balance,
            realized_pnl=metrics.realized_pnl,
            open_positions=len(self._positions),
            uncertain=sorted(self._uncertain),
        )
        self._risk_gate = None
        self._coordinator = None
        self._pipeline = None

    async def wait_idle(self) -> None:
        """Wait until no dispatch, exit or journal task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def submit_candidate(self, candidate: Candidate) -> bool:
        """Hand a discovered token to admission. Returns True if newly queued."""
        if not self._running:
            raise EngineNotRunningError("engine_not_started")
        if candidate.confidence < self._settings.min_candidate_confidence:
            self._logger.info(
                "candidate_below_confidence",
                token_address=candidate.token_address,
                confidence=candidate.confidence,
            )
            return False
        queued = self.coordinator.enqueue(candidate.token_address)
        if queued:
            # The dispatch task runs later and picks the candidate up from here.
            self._candidates[candidate.token_address] = candidate
        self._record("candidate", {**asdict(candidate), "queued": queued})
        return queued

    def update_price(self, token_address: str, price: float) -> asyncio.Task[None] | None:
        """Mark a held position to market and exit on stop loss or take profit."""
        position = self._positions.get(token_address)
        if position is None:
            return None
        position.last_price = price
        position.unrealized_pnl = (price - position.entry_price) * position.quantity
        if price <= position.stop_loss:
            return self.close_position(token_address, "stop_loss")
        if price >= position.take_profit:
            return self.close_position(token_address, "take_profit")
        return None

    def close_position(self, token_address: str, reason: str) -> asyncio.Task[None] | None:
        """Sell the whole position. Only one exit per token runs at a time.

        Nothing is sent while an earlier exit for the token is unreconciled.
        """
        if not self._running:
            raise EngineNotRunningError("engine_not_started")
        position = self._positions.get(token_address)
        if position is None or token_address in self._closing:
            return None
        if token_address in self._uncertain:
            self._logger.warning("close_blocked_outcome_uncertain", token_address=token_address, reason=reason)
            return None
        self._closing.add(token_address)
        return self._spawn(self._close(position, reason))

    def roll_day(self) -> None:
        """Day rollover hook for the external scheduler."""
        self.risk_gate.roll_day()

    def clear_uncertain(
        self,
        token_address: str,
        *,
        filled: bool = False,
        output_amount: float | None = None,
    ) -> ExecutionResult | None:
        """Apply an operator's reconciliation of an uncertain order.

        ``filled`` says whether the transaction landed; ``output_amount`` is
        what it delivered (tokens for a buy, base currency for a sell).
        A filled buy opens the position; an unfilled buy releases the
        reserved slot. A filled sell settles the position; an unfilled sell
        leaves it open so it can be closed again.
        """
        if filled and not (output_amount is not None and output_amount > 0):
            raise ValueError("filled_order_needs_positive_output_amount")
        result = self._uncertain.pop(token_address, None)
        order = self._uncertain_orders.pop(token_address, None)
        if result is None or order is None:
            return result

        gate = self.risk_gate
        amount = float(output_amount or 0.0)
        if result.side is Side.BUY:
            if filled:
                self._add_position(
                    token_address,
                    entry_price=order.size_native_units / amount,
                    quantity=amount,
                    signature=result.signature,
                )
            else:
                gate.register_position_closed()
        elif filled:
            position = self._positions.get(token_address)
            if position is not None:
                self._settle(position, amount, "reconciled", None)
        self._logger.info(
            "uncertain_order_reconciled",
            token_address=token_address,
            side=result.side.value,
            filled=filled,
            signature=result.signature,
        )
        return result

    def snapshot(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "risk": asdict(self.risk_gate.get_metrics()) if self._risk_gate else None,
            "admission": self._coordinator.status() if self._coordinator else None,
            "positions": {token: asdict(p) for token, p in self._positions.items()},
            "uncertain": {token: r.to_dict() for token, r in self._uncertain.items()},
        }

    def _on_dispatch(self, token_address: str) -> None:
        if not self._running:
            self._logger.info("dispatch_dropped_engine_stopping", token_address=token_address)
            if self._coordinator is not None:
                self._coordinator.complete(token_address)
            return
        self._record("dispatch", {"token_address": token_address})
        self._spawn(self._handle_dispatch(token_address))

    async def _handle_dispatch(self, token_address: str) -> None:
        try:
            await self._open(token_address)
        except Exception as exc:  # noqa: BLE001 - a bad dispatch must not stop the engine.
            self._logger.exception("dispatch_failed", token_address=token_address)
            self._record("error", {"token_address": token_address, "error": str(exc)})
        finally:
            self.coordinator.complete(token_address)

    async def _open(self, token_address: str) -> None:
        candidate = self._candidates.pop(token_address, None)
        if token_address in self._positions or token_address in self._uncertain:
            self._logger.info("dispatch_skipped_already_held", token_address=token_address)
            return

        size = self._settings.default_position_size
        if candidate is not None and candidate.suggested_size_hint:
            size = candidate.suggested_size_hint

        gate = self.risk_gate
        check = gate.check_open_position(size)
        self._record(
            "risk_check",
            {"token_address": token_address, "size": size, **asdict(check)},
        )
        if not check.allowed:
            log_risk_event(
                self._logger,
                event_type="position_rejected",
                action="skip",
                token_address=token_address,
                size=size,
                reasons=check.reasons,
            )
            return

        # Reserve the slot before suspending so concurrent dispatches see it.
        gate.register_position_opened()
        order = Order(
            token_address=token_address,
            side=Side.BUY,
            size_native_units=size,
            max_slippage_bps=self._settings.default_slippage_bps,
        )
        result = await self._execute(order)

        if result.success:
            self._add_position(
                token_address,
                entry_price=float(result.execution_price or 0.0),
                quantity=float(result.output_amount or 0.0),
                signature=result.signature,
                pair_address=candidate.pair_address if candidate else None,
            )
        elif result.uncertain:
            self._flag_uncertain(order, result)
        else:
            gate.register_position_closed()

    async def _close(self, position: Position, reason: str) -> None:
        token_address = position.token_address
        try:
            order = Order(
                token_address=token_address,
                side=Side.SELL,
                size_native_units=position.quantity,
                max_slippage_bps=self._settings.default_slippage_bps,
            )
            result = await self._execute(order)
            if result.success:
                self._settle(position, float(result.output_amount or 0.0), reason, result.execution_price)
            elif result.uncertain:
                self._flag_uncertain(order, result)
        finally:
            self._closing.discard(token_address)

    def _add_position(
        self,
        token_address: str,
        *,
        entry_price: float,
        quantity: float,
        signature: str | None,
        pair_address: str | None = None,
    ) -> None:
        position = Position(
            token_address=token_address,
            entry_price=entry_price,
            quantity=quantity,
            stop_loss=entry_price * (1.0 - self._settings.stop_loss_pct / 100.0),
            take_profit=entry_price * (1.0 + self._settings.take_profit_pct / 100.0),
            entry_signature=signature,
            pair_address=pair_address,
        )
        self._positions[token_address] = position
        self._record("position_open", asdict(position))

    def _settle(self, position: Position, proceeds: float, reason: str, exit_price: float | None) -> None:
        pnl = proceeds - position.cost_basis
        self._positions.pop(position.token_address, None)
        gate = self.risk_gate
        gate.record_trade(pnl)
        gate.register_position_closed()
        self._record(
            "position_close",
            {
                **asdict(position),
                "reason": reason,
                "exit_price": exit_price,
                "realized_pnl": pnl,
            },
        )

    def _flag_uncertain(self, order: Order, result: ExecutionResult) -> None:
        # Blocks further orders for the token until clear_uncertain().
        self._uncertain[order.token_address] = result
        self._uncertain_orders[order.token_address] = order
        log_risk_event(
            self._logger,
            event_type="order_outcome_uncertain",
            action="hold",
            token_address=order.token_address,
            side=order.side.value,
            signature=result.signature,
        )

    async def _execute(self, order: Order) -> ExecutionResult:
        if self._pipeline is None:
            raise EngineNotRunningError("engine_not_started")
        result = await self._pipeline.execute(order)
        kind = TradeEventKind.ORDER_FILLED if result.success else TradeEventKind.ORDER_FAILED
        notify_safely(self._notifier, TradeEvent(kind, result.to_dict()))
        self._record("execution_result", result.to_dict())
        return result

    def _on_risk_event(self, event: TradeEvent) -> None:
        self._record("risk_event", {"kind": event.kind.value, "timestamp": event.timestamp, **event.payload})
        self._notifier(event)

    def _record(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is None:
            return
        self._spawn(self._write_journal(event_type, payload))

    async def _write_journal(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is None:
            return
        try:
            await asyncio.to_thread(self._journal.append, event_type, payload)
        except Exception:  # noqa: BLE001 - persistence is best effort.
            self._logger.exception("journal_write_failed", event_type=event_type)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def build_client(settings: Settings) -> SwapClient:
    """Pick the venue for the configured run mode."""
    if settings.is_live_mode:
        from moonwatch.exec.client import JupiterSolanaClient

        return JupiterSolanaClient(settings)
    from moonwatch.exec.paper import PaperSwapClient

    return PaperSwapClient(base_mint=settings.base_mint)


async def run_session(
    settings: Settings,
    token_addresses: list[str],
    *,
    confidence: float = 1.0,
    linger_seconds: float = 0.0,
) -> dict[str, Any]:
    """Feed a fixed list of candidates through a fresh engine and report the end state."""
    client = build_client(settings)
    engine = TradingEngine(settings, client, journal=JournalStore(settings.journal_dir))
    try:
        await engine.start()
        for address in token_addresses:
            engine.submit_candidate(Candidate(token_address=address, confidence=confidence))
        await engine.wait_idle()
        if linger_seconds > 0:
            await asyncio.sleep(linger_seconds)
            await engine.wait_idle()
        return engine.snapshot()
    finally:
        await engine.stop()
        await client.aclose()
