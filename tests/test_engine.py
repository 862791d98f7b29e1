from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from moonwatch.config import Settings
from moonwatch.engine import TradingEngine, run_session
from moonwatch.exec.paper import PaperSwapClient
from moonwatch.journal.store import JournalStore
from moonwatch.types import Candidate, ConfirmationStatus, TradeEvent, TradeEventKind

TOKEN = "Tok3nMint111111111111111111111111111111111"


def _settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "journal_dir": tmp_path,
        "retry_base_delay_seconds": 0.0,
        "confirm_delay_seconds": 0.0,
        "confirm_attempts": 2,
        "call_timeout_seconds": 1.0,
        "token_cooldown_seconds": 60.0,
    }
    values.update(overrides)
    return Settings(**values)


class _UnconfirmedPaperClient(PaperSwapClient):
    async def confirm(self, signature: str) -> ConfirmationStatus:
        return ConfirmationStatus(finalized=False)


def test_admitted_candidate_opens_position(tmp_path: Path) -> None:
    client = PaperSwapClient(prices={TOKEN: 0.001})
    events: list[TradeEvent] = []
    engine = TradingEngine(_settings(tmp_path), client, notifier=events.append)

    async def _run() -> None:
        await engine.start()
        assert engine.submit_candidate(Candidate(token_address=TOKEN, confidence=0.9))
        await engine.wait_idle()

    asyncio.run(_run())

    position = engine.positions[TOKEN]
    assert position.quantity == pytest.approx(99.98, rel=1e-4)
    assert position.entry_price == pytest.approx(0.001, rel=1e-3)
    assert position.stop_loss == pytest.approx(position.entry_price * 0.8)
    assert position.take_profit == pytest.approx(position.entry_price * 1.5)
    assert engine.risk_gate.state.open_position_count == 1
    assert engine.coordinator.in_flight_count == 0
    assert [e.kind for e in events] == [TradeEventKind.ORDER_FILLED]


def test_emergency_stop_rejects_and_frees_admission_slot(tmp_path: Path) -> None:
    client = PaperSwapClient()
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await engine.start()
        engine.risk_gate.set_emergency_stop(True)
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()

    asyncio.run(_run())

    assert engine.positions == {}
    assert client.submitted == []
    assert engine.coordinator.in_flight_count == 0
    assert engine.risk_gate.state.open_position_count == 0


def test_position_limit_holds_under_concurrent_dispatch(tmp_path: Path) -> None:
    client = PaperSwapClient()
    engine = TradingEngine(_settings(tmp_path, max_positions=1, max_concurrent=3), client)

    async def _run() -> None:
        await engine.start()
        for token in ("A", "B", "C"):
            engine.submit_candidate(Candidate(token_address=token, confidence=1.0))
        await engine.wait_idle()

    asyncio.run(_run())

    assert list(engine.positions) == ["A"]
    assert len(client.submitted) == 1
    assert engine.risk_gate.state.open_position_count == 1


def test_stop_loss_closes_position_and_settles_pnl(tmp_path: Path) -> None:
    client = PaperSwapClient(prices={TOKEN: 0.001}, slippage_bps=0.0)
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await engine.start()
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()
        client.set_price(TOKEN, 0.0005)
        task = engine.update_price(TOKEN, 0.0005)
        assert task is not None
        assert engine.update_price(TOKEN, 0.0005) is None
        await engine.wait_idle()

    asyncio.run(_run())

    metrics = engine.risk_gate.get_metrics()
    assert engine.positions == {}
    assert metrics.trade_count == 1
    assert metrics.realized_pnl == pytest.approx(-0.05, rel=1e-3)
    assert metrics.open_position_count == 0


def test_price_inside_band_only_marks_to_market(tmp_path: Path) -> None:
    client = PaperSwapClient(prices={TOKEN: 0.001}, slippage_bps=0.0)
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await engine.start()
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()
        assert engine.update_price(TOKEN, 0.0011) is None

    asyncio.run(_run())

    position = engine.positions[TOKEN]
    assert position.last_price == pytest.approx(0.0011)
    assert position.unrealized_pnl == pytest.approx(0.01, rel=1e-3)


def test_uncertain_buy_keeps_slot_until_cleared(tmp_path: Path) -> None:
    client = _UnconfirmedPaperClient()
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await engine.start()
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()

    asyncio.run(_run())

    assert TOKEN in engine.uncertain
    assert engine.uncertain[TOKEN].signature == client.submitted[0]
    assert len(client.submitted) == 1
    assert engine.positions == {}
    assert engine.risk_gate.state.open_position_count == 1

    cleared = engine.clear_uncertain(TOKEN)
    assert cleared is not None
    assert engine.risk_gate.state.open_position_count == 0


def test_low_confidence_candidate_is_ignored(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path, min_candidate_confidence=0.5), PaperSwapClient())

    async def _run() -> bool:
        await engine.start()
        queued = engine.submit_candidate(Candidate(token_address=TOKEN, confidence=0.2))
        await engine.wait_idle()
        return queued

    assert asyncio.run(_run()) is False
    assert engine.positions == {}


def test_events_are_journaled(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    engine = TradingEngine(_settings(tmp_path), PaperSwapClient(), journal=journal)

    async def _run() -> None:
        await engine.start()
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()

    asyncio.run(_run())

    event_types = {row["event_type"] for row in journal.load_recent(50)}
    assert {"candidate", "dispatch", "risk_check", "execution_result", "position_open"} <= event_types


def test_failing_notifier_does_not_block_execution(tmp_path: Path) -> None:
    def _broken(event: TradeEvent) -> None:
        raise RuntimeError("chat webhook down")

    engine = TradingEngine(_settings(tmp_path), PaperSwapClient(), notifier=_broken)

    async def _run() -> None:
        await engine.start()
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()

    asyncio.run(_run())

    assert TOKEN in engine.positions


def test_run_session_reports_snapshot(tmp_path: Path) -> None:
    snapshot = asyncio.run(run_session(_settings(tmp_path), ["A", "B"]))

    assert snapshot["running"] is True
    assert set(snapshot["positions"]) == {"A", "B"}
    assert snapshot["risk"]["open_position_count"] == 2
    assert snapshot["uncertain"] == {}


def test_risk_events_are_journaled_and_forwarded(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    events: list[TradeEvent] = []
    engine = TradingEngine(_settings(tmp_path), PaperSwapClient(), notifier=events.append, journal=journal)

    async def _run() -> None:
        await engine.start()
        engine.risk_gate.set_emergency_stop(True, reason="operator")
        await engine.wait_idle()

    asyncio.run(_run())

    rows = [row for row in journal.load_recent(10) if row["event_type"] == "risk_event"]
    assert rows[0]["payload"]["kind"] == "emergency_stop"
    assert rows[0]["payload"]["reason"] == "operator"
    assert [e.kind for e in events] == [TradeEventKind.EMERGENCY_STOP]


class _HoldingPaperClient(PaperSwapClient):
    """Confirms normally until ``hold`` is set, then never again."""

    hold = False

    async def confirm(self, signature: str) -> ConfirmationStatus:
        if self.hold:
            return ConfirmationStatus(finalized=False)
        return await super().confirm(signature)


def _open_then_stall_exit(engine: TradingEngine, client: _HoldingPaperClient) -> Any:
    async def _run() -> None:
        await engine.start()
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()
        client.hold = True
        client.set_price(TOKEN, 0.0005)
        assert engine.update_price(TOKEN, 0.0005) is not None
        await engine.wait_idle()

    return _run


def test_uncertain_sell_blocks_further_exits(tmp_path: Path) -> None:
    client = _HoldingPaperClient(prices={TOKEN: 0.001}, slippage_bps=0.0)
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await _open_then_stall_exit(engine, client)()
        assert engine.update_price(TOKEN, 0.0004) is None
        assert engine.close_position(TOKEN, "manual") is None
        await engine.wait_idle()

    asyncio.run(_run())

    sell_signature = client.submitted[1]
    assert len(client.submitted) == 2
    assert engine.uncertain[TOKEN].signature == sell_signature
    assert TOKEN in engine.positions
    assert engine.risk_gate.get_metrics().trade_count == 0


def test_reconciled_sell_settles_position(tmp_path: Path) -> None:
    client = _HoldingPaperClient(prices={TOKEN: 0.001}, slippage_bps=0.0)
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await _open_then_stall_exit(engine, client)()
        engine.clear_uncertain(TOKEN, filled=True, output_amount=0.05)
        await engine.wait_idle()

    asyncio.run(_run())

    metrics = engine.risk_gate.get_metrics()
    assert engine.positions == {}
    assert engine.uncertain == {}
    assert metrics.trade_count == 1
    assert metrics.realized_pnl == pytest.approx(-0.05, rel=1e-3)
    assert metrics.open_position_count == 0


def test_unfilled_sell_can_be_closed_again(tmp_path: Path) -> None:
    client = _HoldingPaperClient(prices={TOKEN: 0.001}, slippage_bps=0.0)
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await _open_then_stall_exit(engine, client)()
        engine.clear_uncertain(TOKEN, filled=False)
        client.hold = False
        assert engine.close_position(TOKEN, "manual") is not None
        await engine.wait_idle()

    asyncio.run(_run())

    assert engine.positions == {}
    assert len(client.submitted) == 3
    assert engine.risk_gate.get_metrics().trade_count == 1


def test_reconciled_buy_opens_position(tmp_path: Path) -> None:
    client = _UnconfirmedPaperClient()
    engine = TradingEngine(_settings(tmp_path), client)

    async def _run() -> None:
        await engine.start()
        engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0))
        await engine.wait_idle()
        engine.clear_uncertain(TOKEN, filled=True, output_amount=200.0)

    asyncio.run(_run())

    position = engine.positions[TOKEN]
    assert position.quantity == pytest.approx(200.0)
    assert position.entry_price == pytest.approx(0.1 / 200.0)
    assert engine.risk_gate.state.open_position_count == 1


def test_duplicate_candidate_keeps_queued_size_hint(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), PaperSwapClient())

    async def _run() -> tuple[bool, bool]:
        await engine.start()
        first = engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0, suggested_size_hint=0.3))
        second = engine.submit_candidate(Candidate(token_address=TOKEN, confidence=1.0, suggested_size_hint=0.9))
        await engine.wait_idle()
        return first, second

    assert asyncio.run(_run()) == (True, False)
    assert engine.positions[TOKEN].cost_basis == pytest.approx(0.3, rel=1e-6)
