#!/usr/bin/env python3
import logging
import time
from dataclasses import dataclass, replace
from typing import Iterable, Iterator

LOG = logging.getLogger("history")

PRICE_EPSILON = 0.01  # CNY/g


def now_ms() -> int:
    return int(time.time() * 1000)


def capacity_for(window_ms: int, interval_ms: int) -> int:
    """Number of samples needed to cover ``window_ms`` at one per interval."""
    if interval_ms <= 0:
        raise ValueError("interval_ms must be positive")
    return max(1, window_ms // interval_ms)


@dataclass(frozen=True)
class PriceSample:
    price: float  # CNY/g
    timestamp_ms: int


@dataclass
class Candle:
    bucket_key: int  # bucket start, epoch ms
    open: float
    high: float
    low: float
    close: float
    timestamp_ms: int  # last tick applied

    def update(self, price: float, timestamp_ms: int) -> None:
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.timestamp_ms = timestamp_ms


def _within(entries, duration_ms: int, now: int | None) -> list:
    ref = now_ms() if now is None else now
    return [e for e in entries if ref - e.timestamp_ms <= duration_ms]


class PriceHistory:
    """
    Bounded, time-ordered sample buffer.

    New samples go on the tail; once ``capacity`` is exceeded the oldest
    ones are evicted from the head. A sample whose price is within
    ``epsilon`` of the last stored price is ignored.
    """

    def __init__(self, capacity: int, epsilon: float = PRICE_EPSILON):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.epsilon = epsilon
        self._samples: list[PriceSample] = []

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[PriceSample]:
        return iter(list(self._samples))

    def latest(self) -> PriceSample | None:
        return self._samples[-1] if self._samples else None

    def samples(self) -> list[PriceSample]:
        return list(self._samples)

    def append(self, sample: PriceSample) -> bool:
        """Store ``sample``; return False if it was deduplicated or stale."""
        last = self.latest()
        if last is not None:
            if sample.timestamp_ms < last.timestamp_ms:
                LOG.debug(
                    "dropping out-of-order sample at %d (tail %d)",
                    sample.timestamp_ms,
                    last.timestamp_ms,
                )
                return False
            if abs(sample.price - last.price) <= self.epsilon:
                return False

        self._samples.append(sample)
        if len(self._samples) > self.capacity:
            del self._samples[: -self.capacity]
        return True

    def seed(self, samples: Iterable[PriceSample]) -> int:
        """Replace contents with persisted history; returns the kept count."""
        ordered = sorted(samples, key=lambda s: s.timestamp_ms)
        self._samples = ordered[-self.capacity:]
        return len(self._samples)

    def windowed(self, duration_ms: int, now_ms: int | None = None) -> list[PriceSample]:
        """Samples no older than ``duration_ms``. Does not modify the buffer."""
        return _within(self._samples, duration_ms, now_ms)


class CandleHistory:
    """
    OHLC aggregation over fixed-width time buckets.

    One candle is open at a time and mutates in place; when a tick lands
    in a later bucket the open candle is sealed onto the (bounded)
    history and a new one starts at that tick's price.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.bucket_width_ms: int | None = None
        self.current: Candle | None = None
        self._sealed: list[Candle] = []

    def __len__(self) -> int:
        return len(self._sealed) + (1 if self.current is not None else 0)

    def reset(self, bucket_width_ms: int | None = None) -> None:
        self.bucket_width_ms = bucket_width_ms
        self.current = None
        self._sealed = []

    def sealed(self) -> list[Candle]:
        return list(self._sealed)

    def candles(self) -> list[Candle]:
        """
        Sealed candles followed by a copy of the open one, oldest first.

        ``capacity`` bounds the sealed candles only, so this can hold
        capacity + 1 entries.
        """
        out = list(self._sealed)
        if self.current is not None:
            out.append(replace(self.current))
        return out

    def add_tick(self, price: float, timestamp_ms: int, bucket_width_ms: int) -> Candle | None:
        """Fold one tick in. Returns the candle sealed by this tick, if any."""
        if bucket_width_ms <= 0:
            raise ValueError("bucket_width_ms must be positive")

        # No reaggregation when the width changes: start over.
        if bucket_width_ms != self.bucket_width_ms:
            if self.bucket_width_ms is not None:
                LOG.info(
                    "candle width %s -> %d ms, resetting history",
                    self.bucket_width_ms,
                    bucket_width_ms,
                )
            self.reset(bucket_width_ms)

        bucket_key = (timestamp_ms // bucket_width_ms) * bucket_width_ms
        current = self.current

        if current is None:
            self.current = Candle(bucket_key, price, price, price, price, timestamp_ms)
            return None

        if bucket_key < current.bucket_key:
            LOG.debug("dropping tick for closed bucket %d", bucket_key)
            return None

        if bucket_key == current.bucket_key:
            current.update(price, timestamp_ms)
            return None

        self._sealed.append(current)
        if len(self._sealed) > self.capacity:
            del self._sealed[: -self.capacity]
        self.current = Candle(bucket_key, price, price, price, price, timestamp_ms)
        return current

    def windowed(self, duration_ms: int, now_ms: int | None = None) -> list[Candle]:
        return _within(self.candles(), duration_ms, now_ms)
