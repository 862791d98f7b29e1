from __future__ import annotations

import asyncio
from typing import Any

import pytest

from moonwatch.exec.client import SubmissionRejectedError
from moonwatch.exec.pipeline import ExecutionPipeline
from moonwatch.types import ConfirmationStatus, ExecutionErrorKind, Order, QuoteResult, Side

BASE = "So11111111111111111111111111111111111111112"
TOKEN = "Tok3nMint111111111111111111111111111111111"


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _ScriptedClient:
    """Swap client whose per-call outcomes are scripted as lists.

    Each list is consumed front to back; the last entry repeats. An
    Exception instance in a script is raised instead of returned.
    """

    def __init__(
        self,
        *,
        quotes: list[Any] | None = None,
        simulations: list[Any] | None = None,
        submissions: list[Any] | None = None,
        confirmations: list[Any] | None = None,
        decimals: dict[str, int] | None = None,
        delay: float = 0.0,
        submit_delay: float = 0.0,
    ) -> None:
        self.quotes = quotes or [_quote(500_000_000, 1_000_000_000)]
        self.simulations = simulations or [True]
        self.submissions = submissions or ["sig-1"]
        self.confirmations = confirmations or [ConfirmationStatus(finalized=True)]
        self.decimals = decimals or {BASE: 9, TOKEN: 6}
        self.delay = delay
        self.submit_delay = submit_delay
        self.calls: list[str] = []
        self.built = 0

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        max_slippage_bps: int,
    ) -> QuoteResult | None:
        self.calls.append("quote")
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._next(self.quotes)

    async def build_swap_transaction(self, quote: QuoteResult) -> str:
        self.built += 1
        self.calls.append("build")
        return f"tx-{self.built}"

    async def simulate(self, tx_blob: str) -> bool:
        self.calls.append(f"simulate:{tx_blob}")
        return self._next(self.simulations)

    async def submit(self, tx_blob: str) -> str:
        self.calls.append(f"submit:{tx_blob}")
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        return self._next(self.submissions)

    async def confirm(self, signature: str) -> ConfirmationStatus:
        self.calls.append(f"confirm:{signature}")
        return self._next(self.confirmations)

    async def get_decimals(self, mint: str) -> int:
        self.calls.append(f"decimals:{mint}")
        return self.decimals[mint]

    async def aclose(self) -> None:
        return None

    @staticmethod
    def _next(script: list[Any]) -> Any:
        value = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(value, Exception):
            raise value
        return value


def _quote(in_amount: int, out_amount: int) -> QuoteResult:
    return QuoteResult(
        input_mint=BASE,
        output_mint=TOKEN,
        in_amount=in_amount,
        out_amount=out_amount,
    )


def _pipeline(client: _ScriptedClient, sleeps: _Sleeps, **kwargs: Any) -> ExecutionPipeline:
    options: dict[str, Any] = {
        "base_mint": BASE,
        "max_attempts": 3,
        "retry_base_delay": 1.0,
        "confirm_attempts": 5,
        "confirm_delay": 3.0,
        "call_timeout": 5.0,
        "sleep": sleeps,
    }
    options.update(kwargs)
    return ExecutionPipeline(client, **options)


def _buy(size: float = 0.5) -> Order:
    return Order(token_address=TOKEN, side=Side.BUY, size_native_units=size, max_slippage_bps=100)


def test_successful_buy_reports_fill_and_price() -> None:
    client = _ScriptedClient()
    result = asyncio.run(_pipeline(client, _Sleeps()).execute(_buy(0.5)))

    assert result.success
    assert result.error_kind is ExecutionErrorKind.NONE
    assert result.signature == "sig-1"
    assert result.input_amount == pytest.approx(0.5)
    assert result.output_amount == pytest.approx(1000.0)
    assert result.execution_price == pytest.approx(0.0005)
    assert result.attempts == 1


def test_submit_failure_requotes_before_resubmitting() -> None:
    client = _ScriptedClient(submissions=[SubmissionRejectedError("blockhash not found"), "sig-2"])
    sleeps = _Sleeps()
    result = asyncio.run(_pipeline(client, sleeps).execute(_buy()))

    assert result.success
    assert result.signature == "sig-2"
    assert result.attempts == 2
    assert client.calls.count("quote") == 2
    assert [c for c in client.calls if c.startswith("submit")] == ["submit:tx-1", "submit:tx-2"]
    assert sleeps.delays == [1.0]


def test_simulation_failure_never_submits() -> None:
    client = _ScriptedClient(simulations=[False])
    result = asyncio.run(_pipeline(client, _Sleeps()).execute(_buy()))

    assert not result.success
    assert result.error_kind is ExecutionErrorKind.FAILED
    assert "simulation_failed" in (result.error or "")
    assert not any(c.startswith("submit") for c in client.calls)
    assert result.attempts == 3


def test_no_route_is_retried_then_reported_exhausted() -> None:
    client = _ScriptedClient(quotes=[None])
    sleeps = _Sleeps()
    result = asyncio.run(_pipeline(client, sleeps).execute(_buy()))

    assert not result.success
    assert result.error is not None
    assert result.error.startswith("attempts_exhausted")
    assert "no_route" in result.error
    assert client.calls.count("quote") == 3
    assert sleeps.delays == [1.0, 2.0]


def test_zero_output_quote_is_retried() -> None:
    client = _ScriptedClient(quotes=[_quote(500_000_000, 0), _quote(500_000_000, 2_000_000_000)])
    result = asyncio.run(_pipeline(client, _Sleeps()).execute(_buy()))

    assert result.success
    assert result.attempts == 2
    assert result.output_amount == pytest.approx(2000.0)


def test_confirmation_timeout_is_uncertain_and_not_resubmitted() -> None:
    client = _ScriptedClient(confirmations=[ConfirmationStatus(finalized=False)])
    sleeps = _Sleeps()
    result = asyncio.run(_pipeline(client, sleeps, confirm_attempts=4).execute(_buy()))

    assert not result.success
    assert result.uncertain
    assert result.error_kind is ExecutionErrorKind.UNCERTAIN
    assert result.signature == "sig-1"
    assert len([c for c in client.calls if c.startswith("submit")]) == 1
    assert len([c for c in client.calls if c.startswith("confirm")]) == 4
    assert sleeps.delays == [3.0, 3.0, 3.0]


def test_confirmation_poll_errors_keep_polling() -> None:
    client = _ScriptedClient(
        confirmations=[RuntimeError("rpc hiccup"), ConfirmationStatus(finalized=True)]
    )
    result = asyncio.run(_pipeline(client, _Sleeps()).execute(_buy()))

    assert result.success
    assert result.attempts == 1


def test_landed_failure_is_retried_with_incremental_backoff() -> None:
    failed = ConfirmationStatus(finalized=False, err={"InstructionError": [0, "Custom"]})
    client = _ScriptedClient(
        submissions=["sig-1", "sig-2", "sig-3"],
        confirmations=[failed, failed, failed],
    )
    sleeps = _Sleeps()
    result = asyncio.run(_pipeline(client, sleeps).execute(_buy()))

    assert not result.success
    assert result.error_kind is ExecutionErrorKind.FAILED
    assert "transaction_failed" in (result.error or "")
    assert result.attempts == 3
    assert sleeps.delays == [1.0, 2.0]


def test_decimals_are_fetched_once_per_mint() -> None:
    client = _ScriptedClient()
    pipeline = _pipeline(client, _Sleeps())

    async def _run_twice() -> None:
        await pipeline.execute(_buy())
        await pipeline.execute(_buy())

    asyncio.run(_run_twice())

    assert client.calls.count(f"decimals:{BASE}") == 1
    assert client.calls.count(f"decimals:{TOKEN}") == 1


def test_slow_call_times_out_and_fails_attempt() -> None:
    client = _ScriptedClient(delay=0.5)
    result = asyncio.run(
        _pipeline(client, _Sleeps(), call_timeout=0.01, max_attempts=2).execute(_buy())
    )

    assert not result.success
    assert "timeout" in (result.error or "")
    assert result.attempts == 2


def test_sell_price_is_base_per_token() -> None:
    sell_quote = QuoteResult(
        input_mint=TOKEN,
        output_mint=BASE,
        in_amount=1_000_000_000,
        out_amount=600_000_000,
    )
    client = _ScriptedClient(quotes=[sell_quote])
    order = Order(token_address=TOKEN, side=Side.SELL, size_native_units=1000.0, max_slippage_bps=100)
    result = asyncio.run(_pipeline(client, _Sleeps()).execute(order))

    assert result.success
    assert result.input_amount == pytest.approx(1000.0)
    assert result.output_amount == pytest.approx(0.6)
    assert result.execution_price == pytest.approx(0.0006)


def test_non_positive_size_is_rejected_without_calls() -> None:
    client = _ScriptedClient()
    result = asyncio.run(_pipeline(client, _Sleeps()).execute(_buy(0.0)))

    assert not result.success
    assert result.attempts == 0
    assert result.error_kind is ExecutionErrorKind.FAILED
    assert client.calls == []


def test_slow_submit_is_uncertain_and_sent_once() -> None:
    client = _ScriptedClient(submit_delay=0.2)
    sleeps = _Sleeps()
    result = asyncio.run(_pipeline(client, sleeps, call_timeout=0.05).execute(_buy()))

    assert not result.success
    assert result.error_kind is ExecutionErrorKind.UNCERTAIN
    assert "submit_timeout" in (result.error or "")
    assert result.signature is None
    assert result.attempts == 1
    assert [c for c in client.calls if c.startswith("submit")] == ["submit:tx-1"]
    assert not any(c.startswith("confirm") for c in client.calls)
    assert sleeps.delays == []


def test_submit_error_after_sending_is_not_retried() -> None:
    client = _ScriptedClient(submissions=[RuntimeError("connection reset by peer"), "sig-2"])
    result = asyncio.run(_pipeline(client, _Sleeps()).execute(_buy()))

    assert result.uncertain
    assert "submit_error" in (result.error or "")
    assert len([c for c in client.calls if c.startswith("submit")]) == 1
