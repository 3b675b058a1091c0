#!/usr/bin/env python3
import logging
import os
import tempfile
from datetime import datetime

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pytz  # type: ignore  # noqa: E402

from history import Candle, PriceSample  # noqa: E402
from price_feed import format_price  # noqa: E402

LOG = logging.getLogger("gold_chart")

SH_TZ = pytz.timezone("Asia/Shanghai")
CANDLE_WIDTH = 0.6
CHART_PADDING = 0.1
CHART_FIGSIZE = (14, 8)

plt.style.use("dark_background")


def time_label(timestamp_ms: int) -> str:
    """HH:MM in Shanghai wall time."""
    return datetime.fromtimestamp(timestamp_ms / 1000, SH_TZ).strftime("%H:%M")


def _save_atomic(fig, path: str) -> None:
    # Write to a temp file in the target directory, then rename over.
    directory = os.path.dirname(os.path.abspath(path))
    with tempfile.NamedTemporaryFile(
        suffix=".png", dir=directory, delete=False
    ) as temp_file:
        fig.savefig(temp_file.name, dpi=150, bbox_inches="tight")
        temp_name = temp_file.name
    os.replace(temp_name, path)


def _pad_limits(ax, lows, highs) -> None:
    lo, hi = float(np.min(lows)), float(np.max(highs))
    span = hi - lo or max(abs(hi) * 0.001, 0.01)
    ax.set_ylim(lo - span * CHART_PADDING, hi + span * CHART_PADDING)


def _time_ticks(ax, labels: list[str]) -> None:
    step = max(1, len(labels) // 10)
    ax.set_xticks(range(0, len(labels), step))
    ax.set_xticklabels([labels[i] for i in range(0, len(labels), step)])


def render_line(samples: list[PriceSample], path: str, title: str = "Gold") -> bool:
    """Plot CNY/g samples as a line chart. Returns False if nothing to draw."""
    if not samples:
        return False

    prices = np.array([s.price for s in samples], dtype=float)
    fig = plt.figure(figsize=CHART_FIGSIZE)
    try:
        ax = fig.gca()
        ax.plot(range(len(prices)), prices, color="gold", linewidth=1.5)
        _pad_limits(ax, prices, prices)
        _time_ticks(ax, [time_label(s.timestamp_ms) for s in samples])
        ax.set_ylabel("CNY/g", color="white")
        ax.yaxis.set_major_formatter(plt.FuncFormatter(lambda x, p: f"¥{x:.2f}"))
        ax.grid(True, alpha=0.3, axis="y")
        last = samples[-1]
        ax.set_title(
            f"{title} -- ¥{format_price(last.price)}/g at "
            f"{time_label(last.timestamp_ms)} CST"
        )
        fig.tight_layout()
        _save_atomic(fig, path)
    finally:
        plt.close(fig)
    return True


def plot_candlesticks(ax, candles: list[Candle], color_up="lightgreen", color_down="lightcoral"):
    for i, c in enumerate(candles):
        color = color_up if c.close >= c.open else color_down
        ax.plot([i, i], [c.low, c.high], color="white", linewidth=1, zorder=1)

        height = abs(c.close - c.open)
        bottom = min(c.open, c.close)
        rect = plt.Rectangle(
            (i - CANDLE_WIDTH / 2, bottom),
            CANDLE_WIDTH,
            height,
            facecolor=color,
            edgecolor="none",
            alpha=1.0,
            zorder=2,
        )
        ax.add_patch(rect)


def render_candles(candles: list[Candle], path: str, title: str = "Gold") -> bool:
    """Plot OHLC candles. Returns False if nothing to draw."""
    if not candles:
        return False

    fig = plt.figure(figsize=CHART_FIGSIZE)
    try:
        ax = fig.gca()
        plot_candlesticks(ax, candles)
        ax.set_xlim(-1, len(candles))
        _pad_limits(
            ax,
            np.array([c.low for c in candles]),
            np.array([c.high for c in candles]),
        )
        _time_ticks(ax, [time_label(c.bucket_key) for c in candles])
        ax.set_ylabel("CNY/g", color="white")
        ax.grid(True, alpha=0.3, axis="y")
        high = max(candles, key=lambda c: c.high)
        ax.set_title(
            f"{title} Candlestick Chart -- Last: ¥{format_price(candles[-1].close)}/g\n"
            f"High: ¥{format_price(high.high)} at {time_label(high.bucket_key)}"
        )
        fig.tight_layout()
        _save_atomic(fig, path)
    finally:
        plt.close(fig)
    return True


def chart_exporter(path: str, window_ms: int):
    """Renderer callback for Monitor: candles to ``path``, line to ``*-line.png``."""
    root, ext = os.path.splitext(path)
    line_path = f"{root}-line{ext or '.png'}"

    def render(state) -> None:
        render_candles(state.candles.windowed(window_ms), path)
        render_line(state.history.windowed(window_ms), line_path)
        LOG.debug("chart exported to %s", path)

    return render
