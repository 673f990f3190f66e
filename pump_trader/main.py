import argparse
import asyncio
import logging
import platform
import signal
import sys
from dataclasses import replace

from pump_trader.config import ADMISSION_MODES, Settings, get_settings
from pump_trader.core.engine import Bot
from pump_trader.exceptions import BotException
from pump_trader.utils.logging import setup_logging
from pump_trader.utils.time import utc_ts

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pump-trader", description="pump.fun bonding-curve trader")
    parser.add_argument("--mode", choices=ADMISSION_MODES, help="admission mode (overrides ADMISSION_MODE)")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--paper", action="store_true", help="force paper trading")
    group.add_argument("--live", action="store_true", help="trade with the configured wallet")
    parser.add_argument("--state", help="state file path (overrides STATE_PATH)")
    parser.add_argument("--log-level", help="log level (overrides LOG_LEVEL)")
    parser.add_argument("--protection", choices=("on", "off"), help="profit vault on/off (overrides PROTECTION_ENABLED)")
    parser.add_argument("--protection-percent", type=float, help="share of profit to protect, 0..50 (overrides PROTECTION_PERCENT)")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="run the trading engine (default)")
    withdraw = commands.add_parser("vault-withdraw", help="move SOL out of the profit vault")
    withdraw.add_argument("amount", type=float)
    commands.add_parser("vault-wipe", help="release the whole profit vault")
    sell = commands.add_parser("sell", help="sell a held position at the current price")
    sell.add_argument("mint")
    sell.add_argument("--percent", type=float, default=100.0, help="share of the position to sell")
    commands.add_parser("reset", help="clear positions, history and stats")
    commands.add_parser("status", help="print the persisted portfolio summary")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.mode:
        overrides["ADMISSION_MODE"] = args.mode
    if args.paper:
        overrides["PAPER_TRADING_MODE"] = True
    if args.live:
        overrides["PAPER_TRADING_MODE"] = False
    if args.state:
        overrides["STATE_PATH"] = args.state
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level.upper()
    if args.protection:
        overrides["PROTECTION_ENABLED"] = args.protection == "on"
    if args.protection_percent is not None:
        overrides["PROTECTION_PERCENT"] = args.protection_percent
    if not overrides:
        return settings
    return replace(settings, **overrides).validate()


async def run_engine(bot: Bot) -> None:
    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info("🛑 [SHUTDOWN] Received signal %s...", sig)
        bot.stop()

    if platform.system() != "Windows":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    await bot.run()


async def run_command(bot: Bot, args: argparse.Namespace) -> None:
    lifecycle = bot.lifecycle
    lifecycle.restore()
    try:
        if args.command == "vault-withdraw":
            moved = lifecycle.withdraw_vault(args.amount)
            logger.info("🏦 Withdrew %.4f SOL, vault now %.4f SOL", moved, bot.vault.balance)
        elif args.command == "vault-wipe":
            moved = lifecycle.wipe_vault()
            logger.info("🏦 Vault wiped, released %.4f SOL", moved)
        elif args.command == "sell":
            if args.mint not in bot.store:
                logger.warning("No open position for %s", args.mint)
                return
            await bot.prices.refresh(utc_ts())
            if not await lifecycle.manual_sell(args.mint, args.percent):
                logger.warning("Sell of %s did not fill", args.mint)
        elif args.command == "reset":
            lifecycle.reset()
        elif args.command == "status":
            stats = lifecycle.stats
            logger.info(
                "📊 open=%d closed=%d pnl=%+.4f SOL W/L %d/%d (win rate %.0f%%) vault=%.4f",
                bot.store.active_count(),
                len(bot.store.history()),
                stats.realized_pnl,
                stats.wins,
                stats.losses,
                stats.win_rate,
                bot.vault.balance,
            )
            for position in bot.store.open_positions():
                logger.info("  %s %s pnl=%.1f%% peak=%.1f%%", position.symbol, position.mint[:8], position.pnl_percent, position.peak_gain_percent)
    finally:
        await bot.gateway.close()


async def async_main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = apply_overrides(get_settings(), args)
    except BotException as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logging(settings)

    try:
        bot = Bot(settings)
        if args.command in (None, "run"):
            await run_engine(bot)
        else:
            await run_command(bot, args)
    except BotException as e:
        logger.error("❌ %s", e)
        return 1
    return 0


def main() -> None:
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\n👋 Keyboard interrupt - shutting down...")


if __name__ == "__main__":
    main()
