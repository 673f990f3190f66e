"""Trade execution - PumpPortal local transactions (live) and simulated fills (paper).

Live flow per order:
- build an unsigned transaction via PumpPortal trade-local
- sign with the wallet and submit over RPC
- poll signature status until confirmed or the timeout elapses
Failed builds/submits are retried once with relaxed slippage and a higher priority fee.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.types import TxOpts
from solders.signature import Signature  # type: ignore

from pump_trader.config import Settings
from pump_trader.constants import ATA_RENT_SOL, PRICE_SCALE
from pump_trader.core.market_data import MarketDataGateway
from pump_trader.core.models import TradeFill
from pump_trader.core.wallet import WalletSigner
from pump_trader.exceptions import (
    DataSourceException,
    ExecutionException,
    NoBalanceError,
    WalletException,
)
from pump_trader.utils.time import utc_ts


def priority_fee_for(sol_amount: float) -> float:
    """Priority fee in SOL scaled to trade size."""
    if sol_amount <= 0.05:
        return 0.0003
    return max(0.0005, min(0.002, sol_amount * 0.02))


class TradeExecutor(Protocol):
    paper: bool

    async def buy(self, mint: str, sol_amount: float, ref_price: float) -> TradeFill: ...

    async def sell(
        self,
        mint: str,
        token_amount: float,
        ref_price: float,
        quote_age_sec: float,
        full_exit: bool,
    ) -> TradeFill: ...

    async def token_balance(self, mint: str) -> float | None: ...

    async def balance(self) -> float: ...


class PumpPortalTrader:
    """Builds, submits and confirms pump.fun orders."""

    def __init__(
        self,
        settings: Settings,
        wallet: WalletSigner,
        rpc: AsyncClient,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.wallet = wallet
        self.rpc = rpc
        self.http = http or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SEC)
        self.logger = logging.getLogger("pump_trader.trader")

    async def build_order(
        self,
        mint: str,
        side: str,
        amount: float,
        slippage_pct: int,
        priority_fee: float,
        denominated_in_sol: bool,
    ) -> bytes:
        payload = {
            "publicKey": self.wallet.address,
            "action": side,
            "mint": mint,
            "amount": amount,
            "denominatedInSol": "true" if denominated_in_sol else "false",
            "slippage": slippage_pct,
            "priorityFee": priority_fee,
            "pool": "pump",
        }
        try:
            response = await self.http.post(self.settings.PUMPPORTAL_TRADE_URL, json=payload)
        except httpx.HTTPError as e:
            raise ExecutionException("Trade API unreachable", mint=mint[:12], side=side) from e
        if response.status_code != 200:
            raise ExecutionException(
                "Trade API rejected order",
                mint=mint[:12],
                side=side,
                status=response.status_code,
                body=response.text[:200],
            )
        return response.content

    async def submit(self, payload: bytes) -> str:
        try:
            signed = self.wallet.sign_transaction(payload)
            resp = await self.rpc.send_raw_transaction(bytes(signed), opts=TxOpts(skip_preflight=True))
        except (WalletException, SolanaRpcException, httpx.HTTPError) as e:
            raise ExecutionException("Submit failed", error=str(e)) from e
        return str(resp.value)

    async def confirm(self, signature: str) -> None:
        """Poll until the transaction lands; raise if it fails or times out."""
        sig = Signature.from_string(signature)
        deadline = time.monotonic() + self.settings.CONFIRM_TIMEOUT_SEC
        while time.monotonic() < deadline:
            try:
                resp = await self.rpc.get_signature_statuses([sig])
            except (SolanaRpcException, httpx.HTTPError) as e:
                self.logger.debug("Status poll failed for %s: %s", signature[:12], e)
            else:
                status = resp.value[0] if resp.value else None
                if status is not None:
                    if status.err is not None:
                        raise ExecutionException("Transaction failed on-chain", signature=signature[:16], err=str(status.err))
                    if status.confirmation_status is not None:
                        return
            await asyncio.sleep(self.settings.CONFIRM_POLL_SEC)
        raise ExecutionException("Confirmation timed out", signature=signature[:16])

    async def execute(
        self,
        mint: str,
        side: str,
        amount: float,
        denominated_in_sol: bool,
        slippage_pct: int,
        priority_fee: float,
    ) -> str:
        """Build, submit and confirm, retrying once with relaxed slippage and fee."""
        try:
            payload = await self.build_order(mint, side, amount, slippage_pct, priority_fee, denominated_in_sol)
            signature = await self.submit(payload)
        except ExecutionException as e:
            self.logger.warning("⚠️ %s %s failed (%s), retrying with relaxed slippage", side.upper(), mint[:12], e)
            payload = await self.build_order(
                mint,
                side,
                amount,
                self.settings.RETRY_SLIPPAGE_PCT,
                self.settings.RETRY_PRIORITY_FEE_SOL,
                denominated_in_sol,
            )
            signature = await self.submit(payload)
        self.logger.info("Submitted %s %s tx=%s", side.upper(), mint[:12], signature[:16])
        await self.confirm(signature)
        return signature

    async def close(self) -> None:
        await self.http.aclose()


class LiveExecutor:
    paper = False

    def __init__(self, settings: Settings, trader: PumpPortalTrader, gateway: MarketDataGateway) -> None:
        self.settings = settings
        self.trader = trader
        self.gateway = gateway
        self.logger = logging.getLogger("pump_trader.live")

    async def buy(self, mint: str, sol_amount: float, ref_price: float) -> TradeFill:
        signature = await self.trader.execute(
            mint,
            "buy",
            sol_amount,
            True,
            self.settings.BUY_SLIPPAGE_PCT,
            priority_fee_for(sol_amount),
        )
        tokens = await self._balance_or_none(mint) or 0.0
        if tokens > 0:
            price = sol_amount / tokens * PRICE_SCALE
        else:
            # Balance not visible yet; the entry price settles on sync or first quote
            price = ref_price
            tokens = sol_amount / (ref_price / PRICE_SCALE) if ref_price > 0 else 0.0
        return TradeFill(mint, "BUY", sol_amount, tokens, price, utc_ts(), signature)

    async def sell(
        self,
        mint: str,
        token_amount: float,
        ref_price: float,
        quote_age_sec: float,
        full_exit: bool,
    ) -> TradeFill:
        held = await self._balance_or_none(mint)
        if held is not None and held <= 0:
            raise NoBalanceError("No token balance to sell", mint=mint[:12])
        if held is not None:
            token_amount = min(token_amount, held)
        before = await self.gateway.get_sol_balance(self.trader.wallet.pubkey)
        est_value = token_amount * ref_price / PRICE_SCALE
        signature = await self.trader.execute(
            mint,
            "sell",
            token_amount,
            False,
            self.settings.SELL_SLIPPAGE_PCT,
            priority_fee_for(est_value),
        )
        after = await self.gateway.get_sol_balance(self.trader.wallet.pubkey)
        revenue = max(0.0, after - before)
        price = revenue / token_amount * PRICE_SCALE if token_amount > 0 else 0.0
        return TradeFill(mint, "SELL", revenue, token_amount, price, utc_ts(), signature)

    async def _balance_or_none(self, mint: str) -> float | None:
        try:
            return await self.gateway.get_token_balance(self.trader.wallet.pubkey, mint)
        except DataSourceException as e:
            self.logger.debug("Token balance unavailable for %s: %s", mint[:12], e)
            return None

    async def token_balance(self, mint: str) -> float | None:
        return await self._balance_or_none(mint)

    async def balance(self) -> float:
        return await self.gateway.get_sol_balance(self.trader.wallet.pubkey)


class PaperExecutor:
    """Simulated fills against the live reserve price."""

    paper = True
    BUY_FEE_PCT = 1.0

    def __init__(self, settings: Settings, starting_balance: float | None = None) -> None:
        self.settings = settings
        self.cash_sol = settings.PAPER_STARTING_BALANCE_SOL if starting_balance is None else starting_balance
        self.logger = logging.getLogger("pump_trader.paper")

    async def buy(self, mint: str, sol_amount: float, ref_price: float) -> TradeFill:
        if ref_price <= 0:
            raise ExecutionException("No reference price for paper buy", mint=mint[:12])
        if self.cash_sol < sol_amount * 2:
            raise ExecutionException("Insufficient paper balance", balance=round(self.cash_sol, 4), needed=sol_amount * 2)
        fill_price = ref_price * (1 + self.settings.PAPER_ENTRY_MARKUP_PCT / 100.0)
        tradeable = sol_amount * (1 - self.BUY_FEE_PCT / 100.0) - ATA_RENT_SOL
        if tradeable <= 0:
            raise ExecutionException("Trade too small after fees", mint=mint[:12], amount=sol_amount)
        tokens = tradeable / (fill_price / PRICE_SCALE)
        self.cash_sol -= sol_amount
        return TradeFill(mint, "BUY", sol_amount, tokens, fill_price, utc_ts(), None, "PAPER")

    async def sell(
        self,
        mint: str,
        token_amount: float,
        ref_price: float,
        quote_age_sec: float,
        full_exit: bool,
    ) -> TradeFill:
        if quote_age_sec > self.settings.STALE_QUOTE_CLOSE_SEC or ref_price <= 0:
            # No trustworthy quote: assume the book is gone
            revenue = 0.0
        else:
            revenue = token_amount * ref_price / PRICE_SCALE * (1 - self.settings.PAPER_EXIT_FRICTION_PCT / 100.0)
        if full_exit:
            revenue += ATA_RENT_SOL
        self.cash_sol += revenue
        price = revenue / token_amount * PRICE_SCALE if token_amount > 0 else 0.0
        return TradeFill(mint, "SELL", revenue, token_amount, price, utc_ts(), None, "PAPER")

    async def token_balance(self, mint: str) -> float | None:
        return None

    async def balance(self) -> float:
        return self.cash_sol

    def credit(self, amount: float) -> None:
        self.cash_sol += amount

    def debit(self, amount: float) -> None:
        self.cash_sol -= amount
