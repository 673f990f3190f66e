import asyncio

import pytest

from pump_trader.core.circuit_breaker import DataSourceGuard
from pump_trader.core.models import ReserveSnapshot
from pump_trader.core.position_store import PositionStore
from pump_trader.core.price_engine import PriceEngine, Quote
from pump_trader.exceptions import DataSourceException, RateLimitedError

from .factories import NOW, make_position

TOKENS = 800_000_000.0


def reserves_for(price: float, sol: float = 40.0) -> ReserveSnapshot:
    """Snapshot whose spot price is `price` with `sol` SOL of liquidity."""
    return ReserveSnapshot(sol, sol / price * 1e6, NOW)


class FakeGateway:
    def __init__(self, snapshots=None, errors=None, store=None):
        self.snapshots = snapshots or {}
        self.errors = errors or {}
        self.store = store
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.seen_prices = []

    async def get_reserves(self, mint):
        self.calls.append(mint)
        if self.store is not None:
            self.seen_prices.append({p.mint: p.current_price for p in self.store.all()})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.001)
            if mint in self.errors:
                raise self.errors[mint]
            return self.snapshots.get(mint, reserves_for(2.0))
        finally:
            self.in_flight -= 1


class FakeStream:
    """Pushed quotes as mint -> (price, sol_reserve)."""

    def __init__(self, quotes):
        self.quotes = quotes

    def get_quote(self, mint, max_age_sec=None):
        return self.quotes.get(mint)


def make_engine(settings, gateway, store, secondary=None):
    return PriceEngine(settings, gateway, store, DataSourceGuard(settings), secondary=secondary)


class TestBatching:
    def test_requests_run_in_bounded_batches(self, settings):
        store = PositionStore()
        for i in range(12):
            store.put(make_position(mint=f"M{i}"))
        gateway = FakeGateway()
        engine = make_engine(settings, gateway, store)

        asyncio.run(engine.refresh(NOW))

        assert len(gateway.calls) == 12
        assert gateway.max_in_flight == settings.PRICE_BATCH_SIZE

    def test_updates_are_applied_after_all_batches(self, settings):
        store = PositionStore()
        for i in range(7):
            store.put(make_position(mint=f"M{i}"))
        gateway = FakeGateway(store=store)
        engine = make_engine(settings, gateway, store)

        asyncio.run(engine.refresh(NOW))

        # Every fetch, including the second batch, saw the previous generation
        assert all(price == 1.0 for seen in gateway.seen_prices for price in seen.values())
        assert all(p.current_price == pytest.approx(2.0) for p in store.all())

    def test_no_positions_no_requests(self, settings):
        gateway = FakeGateway()
        assert asyncio.run(make_engine(settings, gateway, PositionStore()).refresh(NOW)) == []
        assert gateway.calls == []


class TestFallback:
    def test_fresh_quote_updates_price_and_peak(self, settings):
        store = PositionStore()
        store.put(make_position(mint="A", last_quote_at=NOW - 10))
        engine = make_engine(settings, FakeGateway({"A": reserves_for(1.5)}), store)

        asyncio.run(engine.refresh(NOW))

        position = store.get("A")
        assert position.current_price == pytest.approx(1.5)
        assert position.peak_price == pytest.approx(1.5)
        assert position.last_quote_at == NOW
        assert position.last_price_change_at == NOW

    def test_stream_price_used_when_reserves_fail(self, settings):
        store = PositionStore()
        store.put(make_position(mint="A"))
        gateway = FakeGateway(errors={"A": RateLimitedError("429")})
        engine = make_engine(settings, gateway, store, secondary=FakeStream({"A": (1.3, 40.0)}))

        asyncio.run(engine.refresh(NOW))

        assert store.get("A").current_price == pytest.approx(1.3)
        # Rate-limited mint is cooling down; the next tick skips the gateway
        gateway.calls.clear()
        asyncio.run(engine.refresh(NOW + 1))
        assert gateway.calls == []

    def test_last_known_price_is_kept_never_zero(self, settings):
        store = PositionStore()
        store.put(make_position(mint="A", current_price=1.1, last_quote_at=NOW - 50))
        engine = make_engine(settings, FakeGateway(errors={"A": DataSourceException("boom")}), store)

        asyncio.run(engine.refresh(NOW))

        position = store.get("A")
        assert position.current_price == pytest.approx(1.1)
        assert position.last_quote_at == NOW - 50

    def test_timeout_falls_back(self, settings):
        settings.REQUEST_TIMEOUT_SEC = 0.01

        class SlowGateway:
            async def get_reserves(self, mint):
                await asyncio.sleep(1)

        store = PositionStore()
        store.put(make_position(mint="A", current_price=1.2))
        engine = make_engine(settings, SlowGateway(), store)

        asyncio.run(engine.refresh(NOW))

        assert store.get("A").current_price == pytest.approx(1.2)

    def test_first_quote_sets_missing_entry_price(self, settings):
        store = PositionStore()
        engine = make_engine(settings, FakeGateway(), store)
        position = make_position(mint="A", entry_price=0.0)
        fields = engine.compute_update(position, Quote(2.0, None, True, "stream"), NOW)
        assert fields["entry_price"] == 2.0
        assert fields["peak_price"] == 2.0


class TestRugSignal:
    def test_liquidity_drop_flags_rug(self, settings):
        store = PositionStore()
        store.put(make_position(mint="A", last_liquidity=40.0))
        engine = make_engine(settings, FakeGateway({"A": reserves_for(0.9, sol=30.0)}), store)

        rugged = asyncio.run(engine.refresh(NOW))

        assert rugged == ["A"]
        assert store.get("A").rug_detected
        assert store.get("A").last_liquidity == 30.0

    def test_small_drop_is_not_a_rug(self, settings):
        store = PositionStore()
        store.put(make_position(mint="A", last_liquidity=40.0))
        engine = make_engine(settings, FakeGateway({"A": reserves_for(0.95, sol=35.0)}), store)

        assert asyncio.run(engine.refresh(NOW)) == []
        assert not store.get("A").rug_detected

    def test_already_flagged_position_not_reported_twice(self, settings):
        store = PositionStore()
        store.put(make_position(mint="A", last_liquidity=40.0, rug_detected=True))
        engine = make_engine(settings, FakeGateway({"A": reserves_for(0.9, sol=30.0)}), store)

        assert asyncio.run(engine.refresh(NOW)) == []

    def test_streamed_liquidity_flags_rug_while_reserves_unavailable(self, settings):
        store = PositionStore()
        store.put(make_position(mint="A", last_liquidity=40.0))
        gateway = FakeGateway(errors={"A": RateLimitedError("429")})
        engine = make_engine(settings, gateway, store, secondary=FakeStream({"A": (0.6, 25.0)}))

        rugged = asyncio.run(engine.refresh(NOW))

        assert rugged == ["A"]
        position = store.get("A")
        assert position.rug_detected
        assert position.last_liquidity == 25.0
        assert position.current_price == pytest.approx(0.6)
