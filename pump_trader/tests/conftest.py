import pytest

from pump_trader.config import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        STATE_PATH=str(tmp_path / "state.json"),
        LOG_DIR=str(tmp_path / "logs"),
        PAPER_TRADING_MODE=True,
        MIN_SECONDS_BETWEEN_BUYS=2.0,
    )
