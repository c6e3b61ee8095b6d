from __future__ import annotations

from typing import Optional

# Yahoo crypto pairs look like BTC-USD; Binance quotes the same pair as BTCUSDT.
YAHOO_CRYPTO_SUFFIX = "-USD"
BINANCE_QUOTE = "USDT"


def is_crypto(symbol: str) -> bool:
    """Yahoo-format crypto pair (BASE-USD), excluding FX (=X) and futures (=F)."""
    return YAHOO_CRYPTO_SUFFIX in symbol and "=X" not in symbol and "=F" not in symbol


def yahoo_to_binance(symbol: str) -> Optional[str]:
    """BTC-USD -> BTCUSDT. None when the symbol is not a translatable crypto pair."""
    if not is_crypto(symbol):
        return None
    parts = symbol.split(YAHOO_CRYPTO_SUFFIX)
    if len(parts) != 2 or not parts[0] or parts[1]:
        return None
    return f"{parts[0].upper()}{BINANCE_QUOTE}"


def binance_to_yahoo(symbol: str) -> Optional[str]:
    """BTCUSDT -> BTC-USD. None when the symbol is not quoted in USDT."""
    if not symbol.upper().endswith(BINANCE_QUOTE):
        return None
    base = symbol[: -len(BINANCE_QUOTE)].upper()
    if not base:
        return None
    return f"{base}{YAHOO_CRYPTO_SUFFIX}"
