#!/usr/bin/env python3
import logging
import os
from dataclasses import dataclass

import requests

LOG = logging.getLogger("price_feed")

SPOT_URL = "https://data-asg.goldprice.org/dbXRates/USD"
FX_PRIMARY_URL = "https://api.exchangerate-api.com/v4/latest/USD"
FX_BACKUP_URL = "https://open.er-api.com/v6/latest/USD"

FX_DEFAULT = 6.92
TROY_OUNCE_GRAMS = 31.1035
HTTP_TIMEOUT_SEC = float(os.environ.get("HTTP_TIMEOUT_SEC", "10"))


class FeedError(Exception):
    """Base class for upstream feed failures."""


class NetworkError(FeedError):
    """Request failed, timed out or returned a non-2xx status."""


class InvalidResponseShape(FeedError):
    """Feed answered with JSON we cannot use."""


@dataclass(frozen=True)
class RawQuote:
    spot_price_usd: float  # USD per troy ounce
    change_amount: float
    change_percent: float
    close_price: float  # previous close, USD per troy ounce


@dataclass
class FeedState:
    """Per-process caches for the fallback chain."""

    last_known_rate: float = FX_DEFAULT
    last_successful_quote: RawQuote | None = None


def http_headers():
    """Return HTTP headers for upstream JSON feeds."""
    return {
        "Accept": "application/json",
        "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36",
    }


def derive_domestic_price(spot_usd: float, rate: float) -> float:
    """USD per troy ounce -> CNY per gram."""
    return spot_usd * rate / TROY_OUNCE_GRAMS


def format_price(value: float) -> str:
    return f"{value:.2f}"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _get_json(url: str, session=None, timeout: float | None = None) -> dict:
    http = session or requests
    try:
        resp = http.get(
            url,
            headers=http_headers(),
            timeout=HTTP_TIMEOUT_SEC if timeout is None else timeout,
        )
        resp.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise NetworkError(f"{url}: {e}") from e

    try:
        payload = resp.json()
    except ValueError as e:
        raise InvalidResponseShape(f"{url}: body is not JSON ({e})") from e

    if not isinstance(payload, dict):
        raise InvalidResponseShape(f"{url}: expected a JSON object")
    return payload


def parse_rate(payload: dict) -> float:
    """Extract USD->CNY from a ``{rates: {CNY: n}}`` envelope."""
    rates = payload.get("rates")
    if not isinstance(rates, dict):
        raise InvalidResponseShape("missing 'rates' object")
    rate = rates.get("CNY")
    if not _is_number(rate) or rate <= 0:
        raise InvalidResponseShape(f"invalid CNY rate: {rate!r}")
    return float(rate)


def parse_quote(payload: dict) -> RawQuote:
    """Extract the XAU snapshot from ``{items: [{xauPrice, ...}]}``."""
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise InvalidResponseShape("missing 'items' list")
    item = items[0]
    if not isinstance(item, dict) or not _is_number(item.get("xauPrice")):
        raise InvalidResponseShape("missing numeric 'xauPrice'")

    def num(key: str) -> float:
        v = item.get(key)
        return float(v) if _is_number(v) else 0.0

    return RawQuote(
        spot_price_usd=float(item["xauPrice"]),
        change_amount=num("chgXau"),
        change_percent=num("pcXau"),
        close_price=num("xauClose"),
    )


def fetch_exchange_rate(
    state: FeedState, session=None, timeout: float | None = None
) -> float:
    """Fetch USD/CNY: primary, then backup, then the cached rate.

    Never raises. Before the first successful fetch the cache holds
    ``FX_DEFAULT``.
    """
    for name, url in (("primary", FX_PRIMARY_URL), ("backup", FX_BACKUP_URL)):
        try:
            rate = parse_rate(_get_json(url, session, timeout))
        except FeedError as e:
            LOG.warning("FX %s source failed: %s", name, e)
            continue
        state.last_known_rate = rate
        LOG.debug("FX USD/CNY = %.4f (%s)", rate, name)
        return rate

    LOG.warning(
        "all FX sources failed, using cached rate %.4f", state.last_known_rate
    )
    return state.last_known_rate


def fetch_spot_quote(
    state: FeedState, session=None, timeout: float | None = None
) -> RawQuote:
    """Fetch the XAU/USD quote, falling back to the last good one.

    Raises FeedError only when nothing has ever been fetched successfully.
    """
    try:
        quote = parse_quote(_get_json(SPOT_URL, session, timeout))
    except FeedError as e:
        if state.last_successful_quote is not None:
            LOG.warning("spot fetch failed, reusing cached quote: %s", e)
            return state.last_successful_quote
        LOG.error("spot fetch failed with no cached quote: %s", e)
        raise

    state.last_successful_quote = quote
    return quote
