"""mf CLI entrypoint.

Subcommands:
  quote SYMBOL [SYMBOL ...]     Current quotes via the provider cascades
  candles SYMBOL                Historical candles (--range preset or explicit --from/--to)
  stream SYMBOL [SYMBOL ...]    Print realtime updates until interrupted (or --duration)

API keys come from the environment: MARKETFEED_FINNHUB_API_KEY,
MARKETFEED_POLYGON_API_KEY, MARKETFEED_COINGECKO_API_KEY.

Output is one JSON object per line on stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import asdict
from typing import Any, Optional

import orjson

from marketfeed.adapters.env_provider import EnvSecretsProvider
from marketfeed.data.aggregator import DataAggregator
from marketfeed.data.live.config import StreamConfig
from marketfeed.data.live.manager import StreamManager
from marketfeed.data.ranges import RANGE_PRESETS, resolve_range
from marketfeed.types.types import RESOLUTIONS, TickerData

logger = logging.getLogger(__name__)


def _emit(obj: dict[str, Any]) -> None:
    sys.stdout.write(orjson.dumps(obj).decode() + "\n")
    sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="mf")
    p.add_argument("--log-level", default="WARNING", help="Logging level (default WARNING)")
    p.add_argument("--env-prefix", default="MARKETFEED_", help="Environment prefix for API keys")
    sub = p.add_subparsers(dest="command", required=True)

    quote = sub.add_parser("quote", help="Fetch current quotes")
    quote.add_argument("symbols", nargs="+", help="Canonical symbols, e.g. AAPL BTC-USD GC=F")

    candles = sub.add_parser("candles", help="Fetch historical candles")
    candles.add_argument("symbol", help="Canonical symbol")
    candles.add_argument(
        "--range",
        dest="range_code",
        choices=sorted(RANGE_PRESETS),
        help="Range preset; overrides --from/--to/--resolution",
    )
    candles.add_argument(
        "--from",
        dest="from_ts",
        type=int,
        help="Start, epoch seconds (default 60 days before --to)",
    )
    candles.add_argument("--to", dest="to_ts", type=int, help="End, epoch seconds (default now)")
    candles.add_argument("--resolution", choices=RESOLUTIONS, default="D")

    stream = sub.add_parser("stream", help="Print realtime updates")
    stream.add_argument("symbols", nargs="+", help="Canonical symbols")
    stream.add_argument(
        "--duration", type=float, default=None, help="Stop after N seconds (default: run forever)"
    )

    return p


def _candle_window(args: argparse.Namespace, now: int) -> tuple[int, int, str]:
    if args.range_code:
        return resolve_range(args.range_code, now)
    to_ts = args.to_ts if args.to_ts is not None else now
    if args.from_ts is None:
        # Default lookback, ending at --to when given
        from_ts, to_ts, _ = resolve_range("", to_ts)
        return from_ts, to_ts, args.resolution
    return args.from_ts, to_ts, args.resolution


async def run_quote(aggregator: DataAggregator, symbols: list[str]) -> int:
    quotes = await aggregator.get_quotes(symbols)
    for symbol in symbols:
        quote = quotes.get(symbol)
        if quote is None:
            _emit({"symbol": symbol, "error": "not_found"})
        else:
            _emit(asdict(quote))
    return 0 if len(quotes) == len(set(symbols)) else 1


async def run_candles(aggregator: DataAggregator, args: argparse.Namespace) -> int:
    from_ts, to_ts, resolution = _candle_window(args, int(time.time()))
    candles = await aggregator.get_candles(args.symbol, resolution, from_ts, to_ts)
    for candle in candles:
        _emit(asdict(candle))
    return 0 if candles else 1


async def run_stream(manager: StreamManager, symbols: list[str], duration: Optional[float]) -> int:
    def on_tick(tick: TickerData) -> None:
        _emit(asdict(tick))

    manager.on_state_change(lambda state: logger.info(f"[mf] stream state: {state.value}"))
    for symbol in symbols:
        await manager.subscribe(symbol, on_tick)

    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        for symbol in symbols:
            await manager.unsubscribe(symbol, on_tick)
        await manager.close()
    return 0


async def _run(args: argparse.Namespace) -> int:
    secrets = EnvSecretsProvider(prefix=args.env_prefix)

    if args.command == "stream":
        manager = StreamManager(StreamConfig.from_secrets(secrets))
        return await run_stream(manager, args.symbols, args.duration)

    async with DataAggregator.from_secrets(secrets) as aggregator:
        if args.command == "quote":
            return await run_quote(aggregator, args.symbols)
        return await run_candles(aggregator, args)


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
