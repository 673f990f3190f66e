import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
from solders.signature import Signature  # type: ignore

from pump_trader.core.trade_executor import LiveExecutor, PaperExecutor, PumpPortalTrader, priority_fee_for
from pump_trader.exceptions import ExecutionException, NoBalanceError

SIGNATURE = str(Signature.default())


class TestPriorityFee:
    @pytest.mark.parametrize(
        "amount,fee",
        [(0.01, 0.0003), (0.05, 0.0003), (0.06, 0.0012), (0.2, 0.002), (1.0, 0.002)],
    )
    def test_scales_with_size(self, amount, fee):
        assert priority_fee_for(amount) == pytest.approx(fee)

    def test_floor_above_small_trade_band(self):
        assert priority_fee_for(0.051) == pytest.approx(0.00102)
        assert priority_fee_for(0.051) >= 0.0005


class TestPaperExecutor:
    def test_buy_applies_markup_and_fees(self, settings):
        executor = PaperExecutor(settings, starting_balance=1.0)
        fill = asyncio.run(executor.buy("A", 0.1, 0.04))
        assert fill.price == pytest.approx(0.0406)
        assert fill.token_amount == pytest.approx((0.1 * 0.99 - 0.00204) / 0.0406 * 1e6)
        assert executor.cash_sol == pytest.approx(0.9)

    def test_buy_requires_double_the_amount(self, settings):
        executor = PaperExecutor(settings, starting_balance=0.15)
        with pytest.raises(ExecutionException):
            asyncio.run(executor.buy("A", 0.1, 0.04))
        assert executor.cash_sol == 0.15

    def test_sell_with_friction_and_rent(self, settings):
        executor = PaperExecutor(settings, starting_balance=0.0)
        fill = asyncio.run(executor.sell("A", 1_000_000, 0.05, 1.0, True))
        assert fill.sol_amount == pytest.approx(0.05 * 0.97 + 0.00204)
        assert executor.cash_sol == pytest.approx(fill.sol_amount)

    def test_partial_sell_keeps_rent(self, settings):
        executor = PaperExecutor(settings, starting_balance=0.0)
        fill = asyncio.run(executor.sell("A", 1_000_000, 0.05, 1.0, False))
        assert fill.sol_amount == pytest.approx(0.05 * 0.97)

    def test_stale_quote_sells_for_nothing(self, settings):
        executor = PaperExecutor(settings, starting_balance=0.0)
        fill = asyncio.run(executor.sell("A", 1_000_000, 0.05, settings.STALE_QUOTE_CLOSE_SEC + 1, True))
        assert fill.sol_amount == pytest.approx(0.00204)


class FakeWallet:
    address = "Wallet1111"
    pubkey = "Wallet1111"

    def sign_transaction(self, payload):
        return payload


class FakeRpc:
    def __init__(self):
        self.sent = []

    async def send_raw_transaction(self, payload, opts=None):
        self.sent.append(payload)
        return SimpleNamespace(value=SIGNATURE)

    async def get_signature_statuses(self, signatures):
        return SimpleNamespace(value=[SimpleNamespace(err=None, confirmation_status="confirmed")])


class TestPumpPortalTrader:
    def test_retry_uses_relaxed_slippage_and_fee(self, settings):
        requests = []

        def handler(request):
            body = json.loads(request.content)
            requests.append(body)
            if len(requests) == 1:
                return httpx.Response(400, text="slippage")
            return httpx.Response(200, content=b"unsigned-tx")

        async def scenario():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            trader = PumpPortalTrader(settings, FakeWallet(), FakeRpc(), http=http)
            try:
                return await trader.execute("MintA", "buy", 0.1, True, 25, 0.0005)
            finally:
                await trader.close()

        signature = asyncio.run(scenario())

        assert signature == SIGNATURE
        assert requests[0]["slippage"] == 25
        assert requests[1]["slippage"] == settings.RETRY_SLIPPAGE_PCT
        assert requests[1]["priorityFee"] == settings.RETRY_PRIORITY_FEE_SOL
        assert requests[1]["denominatedInSol"] == "true"

    def test_second_failure_surfaces(self, settings):
        async def scenario():
            http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
            trader = PumpPortalTrader(settings, FakeWallet(), FakeRpc(), http=http)
            try:
                await trader.execute("MintA", "sell", 1000, False, 25, 0.0005)
            finally:
                await trader.close()

        with pytest.raises(ExecutionException):
            asyncio.run(scenario())

    def test_onchain_failure_raises(self, settings):
        class FailingRpc(FakeRpc):
            async def get_signature_statuses(self, signatures):
                return SimpleNamespace(value=[SimpleNamespace(err="InstructionError", confirmation_status=None)])

        trader = PumpPortalTrader(settings, FakeWallet(), FailingRpc(), http=httpx.AsyncClient())
        with pytest.raises(ExecutionException):
            asyncio.run(trader.confirm(SIGNATURE))


class FakeTrader:
    wallet = FakeWallet()

    def __init__(self):
        self.orders = []

    async def execute(self, mint, side, amount, denominated_in_sol, slippage_pct, priority_fee):
        self.orders.append((side, amount))
        return SIGNATURE


class FakeGateway:
    def __init__(self, token_balances, sol_balances):
        self.token_balances = list(token_balances)
        self.sol_balances = list(sol_balances)

    async def get_token_balance(self, owner, mint):
        return self.token_balances.pop(0)

    async def get_sol_balance(self, owner):
        return self.sol_balances.pop(0)


class TestLiveExecutor:
    def test_buy_price_from_confirmed_balance(self, settings):
        executor = LiveExecutor(settings, FakeTrader(), FakeGateway([2_000_000.0], []))
        fill = asyncio.run(executor.buy("MintA", 0.1, 0.04))
        assert fill.token_amount == 2_000_000.0
        assert fill.price == pytest.approx(0.05)
        assert fill.signature == SIGNATURE

    def test_sell_revenue_is_balance_delta(self, settings):
        trader = FakeTrader()
        executor = LiveExecutor(settings, trader, FakeGateway([500.0], [1.0, 1.25]))
        fill = asyncio.run(executor.sell("MintA", 1000.0, 0.5, 1.0, True))
        # Capped at the tokens actually held
        assert trader.orders == [("sell", 500.0)]
        assert fill.sol_amount == pytest.approx(0.25)

    def test_sell_without_tokens_raises_no_balance(self, settings):
        executor = LiveExecutor(settings, FakeTrader(), FakeGateway([0.0], []))
        with pytest.raises(NoBalanceError):
            asyncio.run(executor.sell("MintA", 1000.0, 0.5, 1.0, True))
