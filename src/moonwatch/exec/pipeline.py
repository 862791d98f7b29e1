"""Order execution: quote -> simulate -> submit -> confirm, with whole-sequence retries."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from moonwatch.config import Settings
from moonwatch.exec.client import SubmissionRejectedError, SwapClient
from moonwatch.types import ExecutionErrorKind, ExecutionResult, Order, Side
from moonwatch.utils.logging import get_logger, log_order_execution

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class Step(str, Enum):
    QUOTING = "quoting"
    SIMULATING = "simulating"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"


class AttemptFailedError(Exception):
    """One attempt failed before anything landed; safe to retry from a new quote."""

    def __init__(self, step: Step, reason: str) -> None:
        super().__init__(f"{step.value}: {reason}")
        self.step = step
        self.reason = reason


class UncertainOutcomeError(Exception):
    """A transaction was sent but finality was never observed."""

    def __init__(self, signature: str | None, reason: str) -> None:
        super().__init__(f"outcome_uncertain: {reason} (signature={signature})")
        self.signature = signature


class OrderRejectedError(Exception):
    """The order can never succeed as given; not retried."""


@dataclass(frozen=True, slots=True)
class _Fill:
    signature: str
    input_amount: float
    output_amount: float
    execution_price: float


class ExecutionPipeline:
    """Turn an approved order into an :class:`ExecutionResult`.

    Every attempt starts from a fresh quote. Once a transaction may have
    left (a submit that timed out or errored after sending, or a
    confirmation timeout) nothing is retried: the result is reported as
    uncertain and resubmission is left to whoever reconciles it.
    ``execute`` never raises; failures are folded into the result.
    """

    def __init__(
        self,
        client: SwapClient,
        *,
        base_mint: str,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        confirm_attempts: int = 5,
        confirm_delay: float = 3.0,
        call_timeout: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts_must_be_positive")
        if confirm_attempts < 1:
            raise ValueError("confirm_attempts_must_be_positive")
        self._client = client
        self._base_mint = base_mint
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._confirm_attempts = confirm_attempts
        self._confirm_delay = confirm_delay
        self._call_timeout = call_timeout
        self._sleep = sleep
        self._decimals_cache: dict[str, int] = {}
        self._late_submissions: set[asyncio.Future[str]] = set()
        self._logger = get_logger("moonwatch.exec.pipeline")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: SwapClient,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> ExecutionPipeline:
        return cls(
            client,
            base_mint=settings.base_mint,
            max_attempts=settings.max_attempts,
            retry_base_delay=settings.retry_base_delay_seconds,
            confirm_attempts=settings.confirm_attempts,
            confirm_delay=settings.confirm_delay_seconds,
            call_timeout=settings.call_timeout_seconds,
            sleep=sleep,
        )

    async def execute(self, order: Order) -> ExecutionResult:
        attempts = 0
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(AttemptFailedError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_incrementing(start=self._retry_base_delay, increment=self._retry_base_delay),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            if not order.size_native_units > 0:
                raise OrderRejectedError("order_size_must_be_positive")
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    fill = await self._attempt(order)
        except UncertainOutcomeError as exc:
            return self._failure(
                order,
                str(exc),
                ExecutionErrorKind.UNCERTAIN,
                attempts,
                signature=exc.signature,
            )
        except AttemptFailedError as exc:
            return self._failure(order, f"attempts_exhausted: {exc}", ExecutionErrorKind.FAILED, attempts)
        except OrderRejectedError as exc:
            return self._failure(order, f"order_rejected: {exc}", ExecutionErrorKind.FAILED, attempts)
        except Exception as exc:  # noqa: BLE001 - callers rely on execute() never raising.
            self._logger.exception("execution_unexpected_error", token_address=order.token_address)
            return self._failure(order, f"unexpected_error: {exc}", ExecutionErrorKind.FAILED, attempts)

        log_order_execution(
            self._logger,
            token_address=order.token_address,
            side=order.side.value,
            size=order.size_native_units,
            price=fill.execution_price,
            signature=fill.signature,
            status="filled",
            attempts=attempts,
        )
        return ExecutionResult(
            success=True,
            side=order.side,
            token_address=order.token_address,
            signature=fill.signature,
            input_amount=fill.input_amount,
            output_amount=fill.output_amount,
            execution_price=fill.execution_price,
            attempts=attempts,
        )

    async def _attempt(self, order: Order) -> _Fill:
        if order.side is Side.BUY:
            input_mint, output_mint = self._base_mint, order.token_address
        else:
            input_mint, output_mint = order.token_address, self._base_mint

        in_decimals = await self._decimals(input_mint)
        out_decimals = await self._decimals(output_mint)
        amount = int(order.size_native_units * 10**in_decimals)
        if amount <= 0:
            raise OrderRejectedError(f"order_size_below_one_unit: {order.size_native_units}")

        quote = await self._call(
            Step.QUOTING,
            self._client.get_quote(input_mint, output_mint, amount, order.max_slippage_bps),
        )
        if quote is None:
            raise AttemptFailedError(Step.QUOTING, "no_route")
        if quote.out_amount <= 0:
            raise AttemptFailedError(Step.QUOTING, "zero_output")
        tx_blob = await self._call(Step.QUOTING, self._client.build_swap_transaction(quote))

        if not await self._call(Step.SIMULATING, self._client.simulate(tx_blob)):
            raise AttemptFailedError(Step.SIMULATING, "simulation_failed")

        signature = await self._submit(order, tx_blob)
        self._logger.info(
            "transaction_submitted",
            token_address=order.token_address,
            side=order.side.value,
            signature=signature,
        )
        await self._await_confirmation(signature)

        input_amount = quote.in_amount / 10**in_decimals
        output_amount = quote.out_amount / 10**out_decimals
        if order.side is Side.BUY:
            price = input_amount / output_amount
        else:
            price = output_amount / input_amount
        return _Fill(
            signature=signature,
            input_amount=input_amount,
            output_amount=output_amount,
            execution_price=price,
        )

    async def _submit(self, order: Order, tx_blob: str) -> str:
        """Send once. Only a rejection before broadcast fails the attempt.

        The send is shielded: on timeout we stop waiting but never cancel a
        request that may already have reached the network.
        """
        send = asyncio.ensure_future(self._client.submit(tx_blob))
        try:
            return await asyncio.wait_for(asyncio.shield(send), self._call_timeout)
        except SubmissionRejectedError as exc:
            raise AttemptFailedError(Step.SUBMITTING, str(exc)) from exc
        except TimeoutError as exc:
            self._late_submissions.add(send)
            send.add_done_callback(partial(self._on_late_submission, order.token_address))
            raise UncertainOutcomeError(None, "submit_timeout") from exc
        except Exception as exc:  # noqa: BLE001 - the send may have gone out.
            raise UncertainOutcomeError(None, f"submit_error: {exc}") from exc

    def _on_late_submission(self, token_address: str, send: asyncio.Future[str]) -> None:
        self._late_submissions.discard(send)
        if send.cancelled():
            return
        error = send.exception()
        self._logger.warning(
            "late_submission_result",
            token_address=token_address,
            signature=None if error is not None else send.result(),
            error=str(error) if error is not None else None,
        )

    async def _await_confirmation(self, signature: str) -> None:
        for poll in range(1, self._confirm_attempts + 1):
            try:
                status = await asyncio.wait_for(self._client.confirm(signature), self._call_timeout)
            except Exception as exc:  # noqa: BLE001 - status unknown this round, keep polling.
                self._logger.warning(
                    "confirmation_poll_failed",
                    signature=signature,
                    poll=poll,
                    error=str(exc) or type(exc).__name__,
                )
            else:
                if status.failed:
                    raise AttemptFailedError(Step.CONFIRMING, f"transaction_failed: {status.err}")
                if status.finalized:
                    return
            if poll < self._confirm_attempts:
                await self._sleep(self._confirm_delay)
        raise UncertainOutcomeError(
            signature,
            f"not_confirmed_after_{self._confirm_attempts}_polls",
        )

    async def _decimals(self, mint: str) -> int:
        # Mint decimals are immutable on the ledger; cache for the process lifetime.
        cached = self._decimals_cache.get(mint)
        if cached is not None:
            return cached
        decimals = int(await self._call(Step.QUOTING, self._client.get_decimals(mint)))
        self._decimals_cache[mint] = decimals
        return decimals

    async def _call(self, step: Step, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, self._call_timeout)
        except TimeoutError as exc:
            raise AttemptFailedError(step, "timeout") from exc
        except Exception as exc:  # noqa: BLE001 - any step error fails the attempt.
            raise AttemptFailedError(step, str(exc) or type(exc).__name__) from exc

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        self._logger.warning(
            "execution_retry",
            attempt=retry_state.attempt_number,
            max_attempts=self._max_attempts,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    def _failure(
        self,
        order: Order,
        error: str,
        kind: ExecutionErrorKind,
        attempts: int,
        *,
        signature: str | None = None,
    ) -> ExecutionResult:
        log_order_execution(
            self._logger,
            token_address=order.token_address,
            side=order.side.value,
            size=order.size_native_units,
            signature=signature,
            status=kind.value,
            error=error,
            attempts=attempts,
        )
        return ExecutionResult(
            success=False,
            side=order.side,
            token_address=order.token_address,
            signature=signature,
            error=error,
            error_kind=kind,
            attempts=attempts,
        )
