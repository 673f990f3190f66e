from __future__ import annotations

import logging
from pathlib import Path

from pump_trader.config import Settings


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours trading events by keyword."""

    GREY = "\x1b[90m"
    GREEN = "\x1b[92m"
    CYAN = "\x1b[96m"
    RED = "\x1b[91m"
    MAGENTA = "\x1b[95m"
    YELLOW = "\x1b[93m"
    RESET = "\x1b[0m"

    DATE_FMT = "%H:%M:%S"

    # First match wins
    KEYWORD_COLORS = (
        (("BUY", "PASS", "✅"), GREEN),
        (("SELL", "EXIT", "CLOSED", "💰"), MAGENTA),
        (("🏦", "📊", "🤖"), CYAN),
        (("REJECT", "SKIP", "🚫", "🔇"), GREY),
    )

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(message)s", datefmt=self.DATE_FMT)

    def color_for(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.ERROR:
            return self.RED
        if record.levelno >= logging.WARNING:
            return self.YELLOW
        msg = str(record.msg)
        for keywords, color in self.KEYWORD_COLORS:
            if any(k in msg for k in keywords):
                return color
        return self.GREY

    def format(self, record: logging.LogRecord) -> str:
        return f"{self.color_for(record)}{super().format(record)}{self.RESET}"


def setup_logging(settings: Settings) -> None:
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_dir / "trader.log", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(ColoredFormatter())

    root = logging.getLogger()
    root.setLevel(settings.LOG_LEVEL)
    if root.hasHandlers():
        root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    for noisy in ("httpx", "httpcore", "hpack", "asyncio", "websockets", "solana"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
