"""Swap aggregator and ledger RPC client."""

from __future__ import annotations

import base64
import time
from typing import Any, Protocol

import httpx
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from moonwatch.config import Settings
from moonwatch.types import ConfirmationStatus, QuoteResult
from moonwatch.utils.logging import get_logger

_NO_ROUTE_CODES = {"COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND", "TOKEN_NOT_TRADABLE"}


class SwapClientError(Exception):
    """Base swap client error."""


class QuoteError(SwapClientError):
    """Raised when the aggregator request fails."""


class RpcError(SwapClientError):
    """Raised when the ledger returns a JSON-RPC error."""


class RpcTransportError(RpcError):
    """Raised when the RPC endpoint cannot be reached."""


class SubmissionRejectedError(RpcError):
    """The transaction was never accepted for broadcast and is safe to rebuild.

    Any other error out of ``submit`` leaves the transaction's fate unknown.
    """


class SwapClient(Protocol):
    """Operations the execution pipeline needs from a venue.

    Amounts are raw ledger units. Implementations raise on transport
    failure; the pipeline decides what is retried. ``submit`` raises
    :class:`SubmissionRejectedError` only when the transaction certainly
    did not go out.
    """

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        max_slippage_bps: int,
    ) -> QuoteResult | None: ...

    async def build_swap_transaction(self, quote: QuoteResult) -> str: ...

    async def simulate(self, tx_blob: str) -> bool: ...

    async def submit(self, tx_blob: str) -> str: ...

    async def confirm(self, signature: str) -> ConfirmationStatus: ...

    async def get_decimals(self, mint: str) -> int: ...

    async def aclose(self) -> None: ...


class JupiterSolanaClient:
    """Live client: Jupiter quote/swap API plus Solana JSON-RPC."""

    def __init__(self, settings: Settings, *, http: httpx.AsyncClient | None = None) -> None:
        if not settings.wallet_private_key:
            raise ValueError("missing_wallet_private_key")
        if not settings.solana_rpc_url:
            raise ValueError("missing_solana_rpc_url")
        self._settings = settings
        self._keypair = Keypair.from_base58_string(settings.wallet_private_key)
        self._api_url = settings.jupiter_api_url.rstrip("/")
        self._rpc_url = settings.solana_rpc_url
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=settings.call_timeout_seconds)
        self._logger = get_logger("moonwatch.exec.client")

    @property
    def public_key(self) -> str:
        return str(self._keypair.pubkey())

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        max_slippage_bps: int,
    ) -> QuoteResult | None:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(max_slippage_bps),
        }
        try:
            response = await self._http.get(f"{self._api_url}/quote", params=params)
        except httpx.HTTPError as exc:
            raise QuoteError(str(exc)) from exc

        payload = _json_or_empty(response)
        if response.status_code >= 400:
            if payload.get("errorCode") in _NO_ROUTE_CODES:
                return None
            raise QuoteError(f"quote_http_{response.status_code}: {payload or response.text}")
        if "outAmount" not in payload:
            return None
        return QuoteResult(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(payload.get("inAmount", amount)),
            out_amount=int(payload["outAmount"]),
            route=payload,
            fetched_at=time.monotonic(),
        )

    async def build_swap_transaction(self, quote: QuoteResult) -> str:
        body = {
            "quoteResponse": quote.route,
            "userPublicKey": self.public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        try:
            response = await self._http.post(f"{self._api_url}/swap", json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise QuoteError(f"swap_build_failed: {exc}") from exc

        swap_tx = _json_or_empty(response).get("swapTransaction")
        if not isinstance(swap_tx, str) or not swap_tx:
            raise QuoteError("swap_transaction_missing")
        unsigned = VersionedTransaction.from_bytes(base64.b64decode(swap_tx))
        signed = VersionedTransaction(unsigned.message, [self._keypair])
        return base64.b64encode(bytes(signed)).decode("ascii")

    async def simulate(self, tx_blob: str) -> bool:
        result = await self._rpc_call(
            "simulateTransaction",
            [tx_blob, {"encoding": "base64", "commitment": "processed", "sigVerify": False}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            raise RpcError(f"unexpected_simulation_response: {result}")
        err = value.get("err")
        if err is not None:
            self._logger.info("simulation_rejected", err=err, logs=(value.get("logs") or [])[-5:])
            return False
        return True

    async def submit(self, tx_blob: str) -> str:
        # Preflight already ran in simulate().
        try:
            signature = await self._rpc_call(
                "sendTransaction",
                [tx_blob, {"encoding": "base64", "skipPreflight": True}],
            )
        except RpcTransportError as exc:
            if isinstance(exc.__cause__, (httpx.ConnectError, httpx.ConnectTimeout)):
                raise SubmissionRejectedError(f"sendTransaction not sent: {exc}") from exc
            raise
        except RpcError as exc:
            raise SubmissionRejectedError(str(exc)) from exc
        if not isinstance(signature, str) or not signature:
            raise RpcError(f"unexpected_send_response: {signature}")
        return signature

    async def confirm(self, signature: str) -> ConfirmationStatus:
        result = await self._rpc_read(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = result.get("value") if isinstance(result, dict) else None
        status = values[0] if isinstance(values, list) and values else None
        if not isinstance(status, dict):
            return ConfirmationStatus(finalized=False)
        if status.get("err") is not None:
            return ConfirmationStatus(finalized=False, err=status["err"])
        level = status.get("confirmationStatus")
        if self._settings.confirmation_commitment == "finalized":
            return ConfirmationStatus(finalized=level == "finalized")
        return ConfirmationStatus(finalized=level in ("confirmed", "finalized"))

    async def get_decimals(self, mint: str) -> int:
        result = await self._rpc_read("getTokenSupply", [mint])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict) or "decimals" not in value:
            raise RpcError(f"unexpected_token_supply_response: {result}")
        return int(value["decimals"])

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @retry(
        retry=retry_if_exception_type(RpcTransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _rpc_read(self, method: str, params: list[Any]) -> Any:
        return await self._rpc_call(method, params)

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = await self._http.post(self._rpc_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RpcTransportError(f"{method}: {exc}") from exc

        body = _json_or_empty(response)
        if body.get("error"):
            raise RpcError(f"{method}: {body['error']}")
        return body.get("result")


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        decoded = response.json()
    except ValueError:
        return {}
    return decoded if isinstance(decoded, dict) else {}
