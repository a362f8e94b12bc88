"""
Symbol classification and provider symbol mapping.

Canonical symbols look like "AAPL" (equity), "BTC-USD" (crypto) and "GC=F"
(commodity/metal future). Each provider spells them differently; the tables below
translate canonical symbols into provider-native codes. A lookup miss returns the
input unchanged, since the canonical spelling is often what the provider expects.
"""

from __future__ import annotations

from typing import Final

from marketfeed.types.aliases import Symbol
from marketfeed.types.types import AssetClass

# Canonical crypto symbol -> CoinGecko coin id
COINGECKO_IDS: Final[dict[str, str]] = {
    "BTC-USD": "bitcoin",
    "ETH-USD": "ethereum",
    "BNB-USD": "binancecoin",
    "SOL-USD": "solana",
    "XRP-USD": "ripple",
    "ADA-USD": "cardano",
    "DOGE-USD": "dogecoin",
    "DOT-USD": "polkadot",
    "AVAX-USD": "avalanche-2",
    "LINK-USD": "chainlink",
    "MATIC-USD": "matic-network",
    "LTC-USD": "litecoin",
    "UNI-USD": "uniswap",
    "XLM-USD": "stellar",
    "ATOM-USD": "cosmos",
    "NEAR-USD": "near",
    "APT-USD": "aptos",
    "ARB-USD": "arbitrum",
    "OP-USD": "optimism",
    "AAVE-USD": "aave",
    "GRT-USD": "the-graph",
    "FIL-USD": "filecoin",
    "RNDR-USD": "render-token",
    "INJ-USD": "injective-protocol",
    "SUI-USD": "sui",
    "TON-USD": "the-open-network",
    "SHIB-USD": "shiba-inu",
    "PEPE-USD": "pepe",
    "ICP-USD": "internet-computer",
    "TRX-USD": "tron",
}

# Commodity/metal future -> Finnhub OANDA instrument
OANDA_SYMBOLS: Final[dict[str, str]] = {
    "GC=F": "OANDA:XAU_USD",
    "SI=F": "OANDA:XAG_USD",
    "PL=F": "OANDA:XPT_USD",
    "PA=F": "OANDA:XPD_USD",
    "HG=F": "OANDA:XCU_USD",
    "CL=F": "OANDA:BCO_USD",
    "BZ=F": "OANDA:BCO_USD",
    "NG=F": "OANDA:NATGAS_USD",
    "ZC=F": "OANDA:CORN_USD",
    "ZW=F": "OANDA:WHEAT_USD",
    "ZS=F": "OANDA:SOYBN_USD",
    "KC=F": "OANDA:COFFEE_USD",
    "CT=F": "OANDA:COTTON_USD",
    "SB=F": "OANDA:SUGAR_USD",
    "CC=F": "OANDA:COCOA_USD",
}

# Canonical crypto symbol -> Binance stream pair (lowercase, as used in stream names)
BINANCE_STREAM_CODES: Final[dict[str, str]] = {
    "BTC-USD": "btcusdt",
    "ETH-USD": "ethusdt",
    "SOL-USD": "solusdt",
    "DOGE-USD": "dogeusdt",
    "XRP-USD": "xrpusdt",
    "ADA-USD": "adausdt",
    "AVAX-USD": "avaxusdt",
    "DOT-USD": "dotusdt",
    "MATIC-USD": "maticusdt",
    "LINK-USD": "linkusdt",
    "BNB-USD": "bnbusdt",
    "LTC-USD": "ltcusdt",
    "UNI-USD": "uniusdt",
    "ATOM-USD": "atomusdt",
    "NEAR-USD": "nearusdt",
}

# Binance pair as it appears in ticker frames ("BTCUSDT") -> canonical symbol
_BINANCE_REVERSE: Final[dict[str, str]] = {
    code.upper(): symbol for symbol, code in BINANCE_STREAM_CODES.items()
}

_CRYPTO_SUFFIX = "-USD"
_FUTURE_MARKER = "=F"


def classify(symbol: Symbol) -> AssetClass:
    """
    Decide the asset class from the symbol's syntax alone:
    "BTC-USD" -> CRYPTO, "GC=F" -> COMMODITY_OR_METAL, "AAPL" -> EQUITY.
    """
    if symbol.endswith(_CRYPTO_SUFFIX) and "=" not in symbol:
        return AssetClass.CRYPTO
    if _FUTURE_MARKER in symbol:
        return AssetClass.COMMODITY_OR_METAL
    return AssetClass.EQUITY


def coin_id_for(symbol: Symbol) -> str:
    return COINGECKO_IDS.get(symbol, symbol)


def oanda_symbol_for(symbol: Symbol) -> str:
    return OANDA_SYMBOLS.get(symbol, symbol)


def stream_code_for(symbol: Symbol) -> str:
    return BINANCE_STREAM_CODES.get(symbol, symbol)


def exchange_pair_for(symbol: Symbol) -> str:
    """Finnhub crypto bridge symbol, e.g. "BTC-USD" -> "BINANCE:BTCUSDT"."""
    return f"BINANCE:{symbol.replace(_CRYPTO_SUFFIX, 'USDT')}"


def symbol_for_stream_code(code: str) -> Symbol:
    """Reverse Binance lookup; "BTCUSDT" -> "BTC-USD". Misses return the input."""
    return _BINANCE_REVERSE.get(code.upper(), code)


def is_streamable_crypto(symbol: Symbol) -> bool:
    """True if the symbol is served by the crypto (Binance) realtime channel."""
    return symbol in BINANCE_STREAM_CODES
