"""Paper swap client: simulated fills behind the live client interface."""

from __future__ import annotations

import math
import time
from uuid import uuid4

from moonwatch.config import WRAPPED_SOL_MINT
from moonwatch.exec.client import SubmissionRejectedError
from moonwatch.types import ConfirmationStatus, QuoteResult


class PaperSwapClient:
    """Fill every order at a reference price less configured slippage.

    Prices are quoted in base currency per token. Tokens without a price
    use ``default_price``; set it to None to make unknown tokens unroutable.
    """

    def __init__(
        self,
        *,
        base_mint: str = WRAPPED_SOL_MINT,
        prices: dict[str, float] | None = None,
        default_price: float | None = 1e-6,
        slippage_bps: float = 2.0,
        decimals: dict[str, int] | None = None,
        default_decimals: int = 6,
    ) -> None:
        self._base_mint = base_mint
        self._prices = dict(prices or {})
        self._default_price = default_price
        self._slippage_bps = slippage_bps
        self._decimals = {base_mint: 9, **(decimals or {})}
        self._default_decimals = default_decimals
        self._pending: dict[str, QuoteResult] = {}
        self.submitted: list[str] = []

    def set_price(self, token_address: str, price: float) -> None:
        if price <= 0:
            raise ValueError("price_must_be_positive")
        self._prices[token_address] = price

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        max_slippage_bps: int,
    ) -> QuoteResult | None:
        if amount <= 0:
            return None
        buying = input_mint == self._base_mint
        token = output_mint if buying else input_mint
        price = self._prices.get(token, self._default_price)
        if price is None or price <= 0:
            return None

        in_ui = amount / 10 ** self._decimals_for(input_mint)
        out_ui = in_ui / price if buying else in_ui * price
        out_ui *= 1.0 - self._slippage_bps / 10_000.0
        out_amount = math.floor(out_ui * 10 ** self._decimals_for(output_mint))
        return QuoteResult(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=out_amount,
            route={"venue": "paper", "price": price, "slippageBps": max_slippage_bps},
            fetched_at=time.monotonic(),
        )

    async def build_swap_transaction(self, quote: QuoteResult) -> str:
        blob = f"paper-tx-{uuid4().hex}"
        self._pending[blob] = quote
        return blob

    async def simulate(self, tx_blob: str) -> bool:
        return tx_blob in self._pending

    async def submit(self, tx_blob: str) -> str:
        if self._pending.pop(tx_blob, None) is None:
            raise SubmissionRejectedError("unknown_paper_transaction")
        signature = f"PAPER-{uuid4().hex}"
        self.submitted.append(signature)
        return signature

    async def confirm(self, signature: str) -> ConfirmationStatus:
        return ConfirmationStatus(finalized=signature in self.submitted)

    async def get_decimals(self, mint: str) -> int:
        return self._decimals_for(mint)

    async def aclose(self) -> None:
        self._pending.clear()

    def _decimals_for(self, mint: str) -> int:
        return self._decimals.get(mint, self._default_decimals)
