#!/usr/bin/env python3
import argparse
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import pytz  # type: ignore
import requests

import price_feed
from history import (
    CandleHistory,
    PriceHistory,
    PriceSample,
    capacity_for,
)
from price_feed import FeedError, FeedState, derive_domestic_price, format_price

LOG = logging.getLogger("monitor")

SH_TZ = pytz.timezone("Asia/Shanghai")


@dataclass(frozen=True)
class MonitorConfig:
    api_base_url: str = ""  # empty disables mirroring
    refresh_interval_sec: float = 5.0
    history_hours: float = 2.0
    candle_width_sec: int = 60
    http_timeout_sec: float = 10.0
    chart_export: str = ""  # PNG path, empty disables

    @property
    def interval_ms(self) -> int:
        return int(self.refresh_interval_sec * 1000)

    @property
    def window_ms(self) -> int:
        return int(self.history_hours * 3600 * 1000)

    @property
    def candle_width_ms(self) -> int:
        return int(self.candle_width_sec * 1000)

    @property
    def capacity(self) -> int:
        return capacity_for(self.window_ms, self.interval_ms)

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        return cls(
            api_base_url=os.environ.get("API_BASE_URL", cls.api_base_url),
            refresh_interval_sec=float(
                os.environ.get("REFRESH_INTERVAL_SEC", cls.refresh_interval_sec)
            ),
            history_hours=float(
                os.environ.get("HISTORY_HOURS", cls.history_hours)
            ),
            candle_width_sec=int(
                os.environ.get("CANDLE_WIDTH_SEC", cls.candle_width_sec)
            ),
            http_timeout_sec=float(
                os.environ.get("HTTP_TIMEOUT_SEC", cls.http_timeout_sec)
            ),
            chart_export=os.environ.get("CHART_EXPORT", cls.chart_export),
        )


@dataclass
class MonitorState:
    feed: FeedState
    history: PriceHistory
    candles: CandleHistory
    today_open_usd: float | None = None
    last_date: str | None = None
    last_snapshot: "Snapshot | None" = None

    @classmethod
    def create(cls, config: MonitorConfig) -> "MonitorState":
        return cls(
            feed=FeedState(),
            history=PriceHistory(config.capacity),
            candles=CandleHistory(
                capacity_for(config.window_ms, config.candle_width_ms)
            ),
        )


@dataclass(frozen=True)
class Snapshot:
    """One update cycle's worth of display values."""

    price_cny: float
    price_usd: float
    exchange_rate: float
    change_percent: float
    change_amount: float
    close_usd: float
    open_usd: float | None
    timestamp_ms: int
    stored: bool = False

    @property
    def change_cny(self) -> float:
        return derive_domestic_price(self.change_amount, self.exchange_rate)

    @property
    def close_cny(self) -> float:
        return derive_domestic_price(self.close_usd, self.exchange_rate)

    @property
    def open_cny(self) -> float | None:
        if self.open_usd is None:
            return None
        return derive_domestic_price(self.open_usd, self.exchange_rate)

    def to_row(self) -> dict:
        """Payload for ``POST /api/price``."""
        return {
            "priceUsd": self.price_usd,
            "priceCny": self.price_cny,
            "exchangeRate": self.exchange_rate,
            "changePercent": self.change_percent,
            "changeAmount": self.change_amount,
            "closePrice": self.close_usd,
            "openPrice": self.open_usd,
            "timestamp": self.timestamp_ms,
        }

    def describe(self) -> str:
        sign = "+" if self.change_percent >= 0 else ""
        return (
            f"{format_price(self.price_cny)} CNY/g "
            f"(XAU {format_price(self.price_usd)} USD/ozt, "
            f"{sign}{self.change_percent:.2f}%, USD/CNY {self.exchange_rate:.4f})"
        )


class PriceMirror:
    """Writes accepted samples to the price API without blocking the cycle."""

    def __init__(self, base_url: str, timeout: float = 10.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.dropped = 0
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="price-mirror"
        )
        self._lock = threading.Lock()
        self._pending: Future | None = None
        self._closed = False

    def save(self, row: dict) -> bool:
        try:
            resp = self.session.post(
                f"{self.base_url}/api/price", json=row, timeout=self.timeout
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            LOG.warning("failed to persist price at %s: %s", row.get("timestamp"), e)
            return False
        return True

    def submit(self, row: dict) -> Future | None:
        """
        Fire-and-forget ``save``.

        At most one write is in flight; a row submitted while the previous
        one is still pending, or after ``close``, is dropped and logged.
        """
        with self._lock:
            if self._closed:
                LOG.debug("mirror closed, dropping price at %s", row.get("timestamp"))
                return None
            if self._pending is not None and not self._pending.done():
                self.dropped += 1
                LOG.warning(
                    "previous persist still pending, dropping price at %s",
                    row.get("timestamp"),
                )
                return None
            self._pending = self._executor.submit(self.save, row)
            return self._pending

    def load_history(self, hours: float, limit: int) -> list[PriceSample]:
        """Fetch persisted samples; empty on any failure."""
        try:
            resp = self.session.get(
                f"{self.base_url}/api/prices",
                params={"hours": int(hours), "limit": int(limit)},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            LOG.warning("failed to load history: %s", e)
            return []

        if not isinstance(payload, dict) or not payload.get("success"):
            return []
        out = []
        for item in payload.get("data") or []:
            try:
                out.append(
                    PriceSample(float(item["priceCny"]), int(item["timestamp"]))
                )
            except (KeyError, TypeError, ValueError):
                LOG.debug("skipping malformed history row: %r", item)
        return out

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)


def _roll_open_price(state: MonitorState, spot_usd: float, now: datetime) -> None:
    # The first price seen on a new Shanghai calendar day is the day's open.
    day = now.astimezone(SH_TZ).date().isoformat()
    if state.last_date != day:
        state.today_open_usd = spot_usd
        state.last_date = day


def run_cycle(
    state: MonitorState,
    config: MonitorConfig,
    session=None,
    mirror: PriceMirror | None = None,
    now: datetime | None = None,
) -> Snapshot:
    """
    One update: rate -> spot -> derive -> buffer -> (mirror).

    Raises FeedError if no spot quote is available at all; the buffers and
    the last snapshot are then left untouched.
    """
    timeout = config.http_timeout_sec
    rate = price_feed.fetch_exchange_rate(state.feed, session, timeout)
    quote = price_feed.fetch_spot_quote(state.feed, session, timeout)

    now = now or datetime.now(pytz.utc)
    ts = int(now.timestamp() * 1000)
    _roll_open_price(state, quote.spot_price_usd, now)

    price_cny = derive_domestic_price(quote.spot_price_usd, rate)
    stored = state.history.append(PriceSample(price_cny, ts))
    state.candles.add_tick(price_cny, ts, config.candle_width_ms)

    snap = Snapshot(
        price_cny=price_cny,
        price_usd=quote.spot_price_usd,
        exchange_rate=rate,
        change_percent=quote.change_percent,
        change_amount=quote.change_amount,
        close_usd=quote.close_price,
        open_usd=state.today_open_usd,
        timestamp_ms=ts,
        stored=stored,
    )
    state.last_snapshot = snap

    if stored and mirror is not None:
        mirror.submit(snap.to_row())
    return snap


class RepeatingTask:
    """
    Calls ``fn`` every ``interval_sec`` seconds on a worker thread.

    A tick that fires while the previous call is still running is skipped.
    """

    def __init__(self, interval_sec: float, fn: Callable[[], None], name: str = "task"):
        self.interval_sec = interval_sec
        self.fn = fn
        self.name = name
        self.skipped = 0
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self) -> bool:
        """Run ``fn`` once unless a run is in flight. Returns whether it ran."""
        if not self._running.acquire(blocking=False):
            self.skipped += 1
            LOG.warning("%s: previous run still in progress, skipping tick", self.name)
            return False
        try:
            self.fn()
        except Exception as e:
            LOG.error("%s failed: %s: %s", self.name, type(e).__name__, e)
        finally:
            self._running.release()
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            threading.Thread(target=self.tick, daemon=True).start()
            self._stop.wait(self.interval_sec)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> bool:
        """Stop ticking and wait for a run in flight. False if it outlived ``timeout``."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if not self._running.acquire(timeout=-1 if timeout is None else timeout):
            LOG.warning("%s: run still in progress after stop", self.name)
            return False
        self._running.release()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stopped; True if the stop flag is set."""
        return self._stop.wait(timeout)


class Monitor:
    """Wires state, feeds, the mirror and any renderers together."""

    def __init__(
        self,
        config: MonitorConfig,
        session=None,
        mirror: PriceMirror | None = None,
        renderers: list[Callable[[MonitorState], None]] | None = None,
    ):
        self.config = config
        self.state = MonitorState.create(config)
        self.session = session or requests.Session()
        self.mirror = mirror
        self.renderers = renderers or []
        self.task = RepeatingTask(config.refresh_interval_sec, self.update, "update")

    def bootstrap(self) -> int:
        """Seed the sample buffer from the price API, if configured."""
        if self.mirror is None:
            return 0
        samples = self.mirror.load_history(
            self.config.history_hours, self.state.history.capacity
        )
        n = self.state.history.seed(samples)
        if n:
            LOG.info("loaded %d samples from price API", n)
        return n

    def update(self) -> Snapshot | None:
        try:
            snap = run_cycle(self.state, self.config, self.session, self.mirror)
        except FeedError as e:
            LOG.error("update skipped: %s", e)
            return None

        LOG.info("%s%s", snap.describe(), "" if snap.stored else " (unchanged)")
        for render in self.renderers:
            try:
                render(self.state)
            except Exception as e:
                LOG.error("renderer failed: %s: %s", type(e).__name__, e)
        return snap

    def run(self) -> None:
        self.bootstrap()
        self.task.start()
        try:
            while not self.task.wait(1.0):
                pass
        except KeyboardInterrupt:
            LOG.info("shutting down")
        finally:
            self.task.stop()
            if self.mirror is not None:
                self.mirror.close()


def parse_args(argv=None) -> argparse.Namespace:
    env = MonitorConfig.from_env()
    p = argparse.ArgumentParser(description="Poll gold spot + USD/CNY and track CNY/g")
    p.add_argument("--api", default=env.api_base_url, help="price API base URL")
    p.add_argument("--interval", type=float, default=env.refresh_interval_sec)
    p.add_argument("--hours", type=float, default=env.history_hours)
    p.add_argument("--candle-width", type=int, default=env.candle_width_sec)
    p.add_argument("--timeout", type=float, default=env.http_timeout_sec)
    p.add_argument("--chart", default=env.chart_export, help="PNG export path")
    return p.parse_args(argv)


def main(argv=None):
    log_level = logging.DEBUG if os.environ.get("DEBUG") else logging.INFO
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s: %(message)s"
    )

    args = parse_args(argv)
    cfg = MonitorConfig(
        api_base_url=args.api,
        refresh_interval_sec=args.interval,
        history_hours=args.hours,
        candle_width_sec=args.candle_width,
        http_timeout_sec=args.timeout,
        chart_export=args.chart,
    )
    mirror = PriceMirror(cfg.api_base_url, cfg.http_timeout_sec) if cfg.api_base_url else None
    renderers = []
    if cfg.chart_export:
        from gold_chart import chart_exporter

        renderers.append(chart_exporter(cfg.chart_export, cfg.window_ms))

    Monitor(cfg, mirror=mirror, renderers=renderers).run()


if __name__ == "__main__":
    main()
