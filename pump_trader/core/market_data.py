"""
Market Data Gateway

Reads pump.fun bonding curve accounts and SPL token state over Solana RPC.

Upstream failures are normalized into DataSourceException subclasses:
- 429 -> RateLimitedError
- 403 -> ForbiddenError (retried once on the public RPC)
- missing account -> NotFoundError
- timeout -> DataSourceTimeout
"""
from __future__ import annotations

import asyncio
import logging
import struct
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.types import TokenAccountOpts
from solders.pubkey import Pubkey  # type: ignore
from spl.token.instructions import get_associated_token_address

from pump_trader.config import Settings
from pump_trader.constants import (
    BONDING_CURVE_SEED,
    CURVE_VSOL_OFFSET,
    CURVE_VTOKEN_OFFSET,
    LAMPORTS_PER_SOL,
    PUMP_PROGRAM,
    TOKEN_UNIT,
)
from pump_trader.core.models import ReserveSnapshot, TokenInsights
from pump_trader.exceptions import (
    DataSourceException,
    DataSourceTimeout,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
)
from pump_trader.utils.time import utc_ts

T = TypeVar("T")

# SPL mint layout: COption<Pubkey> mint authority at 0, COption<Pubkey> freeze authority at 46
MINT_AUTHORITY_TAG = 0
FREEZE_AUTHORITY_TAG = 46
MINT_ACCOUNT_MIN_LEN = 82


def bonding_curve_address(mint: str) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [BONDING_CURVE_SEED, bytes(Pubkey.from_string(mint))],
        PUMP_PROGRAM,
    )
    return pda


def decode_curve_reserves(data: bytes) -> tuple[float, float]:
    """Returns (sol_reserve in SOL, token_reserve in whole tokens)."""
    if len(data) < CURVE_VSOL_OFFSET + 8:
        raise NotFoundError("Bonding curve account too short", size=len(data))
    (v_tokens,) = struct.unpack_from("<Q", data, CURVE_VTOKEN_OFFSET)
    (v_sol,) = struct.unpack_from("<Q", data, CURVE_VSOL_OFFSET)
    return v_sol / LAMPORTS_PER_SOL, v_tokens / TOKEN_UNIT


def decode_mint_authorities(data: bytes) -> tuple[bool, bool]:
    """Returns (mint_authority_active, freeze_authority_active)."""
    if len(data) < MINT_ACCOUNT_MIN_LEN:
        raise NotFoundError("Mint account too short", size=len(data))
    (mint_tag,) = struct.unpack_from("<I", data, MINT_AUTHORITY_TAG)
    (freeze_tag,) = struct.unpack_from("<I", data, FREEZE_AUTHORITY_TAG)
    return mint_tag == 1, freeze_tag == 1


def classify_error(error: BaseException, **context: Any) -> DataSourceException:
    """Map transport errors (possibly wrapped by the RPC client) onto the data source taxonomy."""
    seen: list[BaseException] = []
    current: BaseException | None = error
    while current is not None and current not in seen:
        seen.append(current)
        if isinstance(current, DataSourceException):
            return current
        if isinstance(current, httpx.HTTPStatusError):
            status = current.response.status_code
            if status == 429:
                return RateLimitedError("Rate limited", status=status, **context)
            if status == 403:
                return ForbiddenError("Forbidden", status=status, **context)
            if status == 404:
                return NotFoundError("Not found", status=status, **context)
            return DataSourceException("HTTP error", status=status, **context)
        if isinstance(current, (httpx.TimeoutException, asyncio.TimeoutError)):
            return DataSourceTimeout("Request timed out", **context)
        current = current.__cause__ or current.__context__
    text = str(error)
    if "429" in text:
        return RateLimitedError("Rate limited", **context)
    if "403" in text:
        return ForbiddenError("Forbidden", **context)
    return DataSourceException(f"Data source error: {type(error).__name__}", **context)


class MarketDataGateway:
    def __init__(
        self,
        settings: Settings,
        client: AsyncClient | None = None,
        fallback_client: AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.logger = logging.getLogger("pump_trader.market_data")
        self.client = client or AsyncClient(settings.RPC_URL, timeout=settings.REQUEST_TIMEOUT_SEC)
        if fallback_client is None and settings.PUBLIC_RPC_URL and settings.PUBLIC_RPC_URL != settings.RPC_URL:
            fallback_client = AsyncClient(settings.PUBLIC_RPC_URL, timeout=settings.REQUEST_TIMEOUT_SEC)
        self.fallback_client = fallback_client

    async def _call(self, op: Callable[[AsyncClient], Awaitable[T]], **context: Any) -> T:
        try:
            return await self._call_once(self.client, op, **context)
        except ForbiddenError:
            if self.fallback_client is None:
                raise
            self.logger.debug("Primary RPC forbidden, retrying on public RPC %s", context)
            return await self._call_once(self.fallback_client, op, **context)

    async def _call_once(self, client: AsyncClient, op: Callable[[AsyncClient], Awaitable[T]], **context: Any) -> T:
        try:
            return await asyncio.wait_for(op(client), timeout=self.settings.REQUEST_TIMEOUT_SEC)
        except DataSourceException:
            raise
        except (asyncio.TimeoutError, httpx.HTTPError, SolanaRpcException) as e:
            raise classify_error(e, **context) from e

    async def get_reserves(self, mint: str) -> ReserveSnapshot:
        curve = bonding_curve_address(mint)
        resp = await self._call(lambda c: c.get_account_info(curve), mint=mint[:12])
        if resp.value is None:
            raise NotFoundError("Bonding curve not found", mint=mint[:12])
        sol_reserve, token_reserve = decode_curve_reserves(bytes(resp.value.data))
        if sol_reserve <= 0 or token_reserve <= 0:
            raise NotFoundError("Bonding curve empty (graduated?)", mint=mint[:12])
        return ReserveSnapshot(sol_reserve=sol_reserve, token_reserve=token_reserve, fetched_at=utc_ts())

    async def get_token_insights(self, mint: str, creator: str = "") -> TokenInsights:
        """Authorities are required; holder data is best effort."""
        mint_key = Pubkey.from_string(mint)
        resp = await self._call(lambda c: c.get_account_info(mint_key), mint=mint[:12])
        if resp.value is None:
            raise NotFoundError("Mint account not found", mint=mint[:12])
        mint_active, freeze_active = decode_mint_authorities(bytes(resp.value.data))
        insights = TokenInsights(
            freeze_authority_active=freeze_active,
            mint_authority_active=mint_active,
            has_metadata=True,
        )
        try:
            await self._fill_holders(insights, mint, mint_key, creator)
        except DataSourceException as e:
            self.logger.debug("Holder data unavailable for %s: %s", mint[:12], e)
        return insights

    async def _fill_holders(self, insights: TokenInsights, mint: str, mint_key: Pubkey, creator: str) -> None:
        supply_resp = await self._call(lambda c: c.get_token_supply(mint_key), mint=mint[:12])
        supply = float(supply_resp.value.amount)
        if supply <= 0:
            return
        largest = await self._call(lambda c: c.get_token_largest_accounts(mint_key), mint=mint[:12])
        curve_ata = get_associated_token_address(bonding_curve_address(mint), mint_key)
        holders = [
            int(acc.amount.amount)
            for acc in largest.value
            if acc.address != curve_ata and int(acc.amount.amount) > 0
        ]
        insights.holder_count = len(holders)
        insights.top10_pct = sum(sorted(holders, reverse=True)[:10]) / supply * 100.0
        if creator:
            dev_raw = await self._token_raw_balance(Pubkey.from_string(creator), mint_key)
            insights.deployer_pct = dev_raw / supply * 100.0

    async def _token_raw_balance(self, owner: Pubkey, mint_key: Pubkey) -> int:
        resp = await self._call(
            lambda c: c.get_token_accounts_by_owner_json_parsed(owner, TokenAccountOpts(mint=mint_key)),
            owner=str(owner)[:12],
        )
        total = 0
        for acc in resp.value or []:
            try:
                total += int(acc.account.data.parsed["info"]["tokenAmount"]["amount"])
            except (KeyError, TypeError):
                continue
        return total

    async def get_token_balance(self, owner: Pubkey, mint: str) -> float:
        """Whole-token balance held by `owner` across all its accounts for `mint`."""
        raw = await self._token_raw_balance(owner, Pubkey.from_string(mint))
        return raw / TOKEN_UNIT

    async def get_sol_balance(self, owner: Pubkey) -> float:
        resp = await self._call(lambda c: c.get_balance(owner), owner=str(owner)[:12])
        return resp.value / LAMPORTS_PER_SOL

    async def close(self) -> None:
        await self.client.close()
        if self.fallback_client is not None:
            await self.fallback_client.close()
