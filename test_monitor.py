import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import pytz  # type: ignore
import requests

from history import PriceSample
from monitor import (
    Monitor,
    MonitorConfig,
    MonitorState,
    PriceMirror,
    RepeatingTask,
    run_cycle,
)
from price_feed import FX_BACKUP_URL, FX_PRIMARY_URL, SPOT_URL, NetworkError


def json_response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    return resp


def spot(price, chg=10.0, pc=0.5, close=1990.0):
    return {"items": [{"xauPrice": price, "chgXau": chg, "pcXau": pc, "xauClose": close}]}


class FakeFeeds:
    """Session stand-in with per-URL scripted answers."""

    def __init__(self, rate=7.10, spot_price=2000.0):
        self.answers = {
            FX_PRIMARY_URL: json_response({"rates": {"CNY": rate}}),
            FX_BACKUP_URL: json_response({"rates": {"CNY": rate}}),
            SPOT_URL: json_response(spot(spot_price)),
        }
        self.calls = []

    def set(self, url, answer):
        self.answers[url] = answer if isinstance(answer, Exception) else json_response(answer)

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        answer = self.answers[url]
        if isinstance(answer, Exception):
            raise answer
        return answer


T0 = datetime(2025, 1, 15, 6, 0, tzinfo=pytz.utc)  # 14:00 Shanghai


class TestRunCycle:
    """Test one rate -> spot -> derive -> buffer pass."""

    def setup_method(self):
        self.cfg = MonitorConfig()
        self.state = MonitorState.create(self.cfg)
        self.feeds = FakeFeeds()

    def test_end_to_end_price(self):
        snap = run_cycle(self.state, self.cfg, self.feeds, now=T0)

        assert f"{snap.price_cny:.2f}" == "456.54"
        assert snap.stored is True
        assert snap.timestamp_ms == int(T0.timestamp() * 1000)
        assert len(self.state.history) == 1
        assert len(self.state.candles) == 1
        assert self.state.last_snapshot is snap

    def test_unchanged_price_not_stored(self):
        run_cycle(self.state, self.cfg, self.feeds, now=T0)
        snap = run_cycle(self.state, self.cfg, self.feeds, now=T0 + timedelta(seconds=5))

        assert snap.stored is False
        assert len(self.state.history) == 1

    def test_first_cycle_without_quote_raises(self):
        self.feeds.set(SPOT_URL, requests.exceptions.ConnectionError("down"))

        with pytest.raises(NetworkError):
            run_cycle(self.state, self.cfg, self.feeds, now=T0)
        assert len(self.state.history) == 0
        assert len(self.state.candles) == 0
        assert self.state.last_snapshot is None

    def test_cached_quote_used_after_failure(self):
        run_cycle(self.state, self.cfg, self.feeds, now=T0)
        self.feeds.set(SPOT_URL, requests.exceptions.Timeout("slow"))
        self.feeds.set(FX_PRIMARY_URL, {"rates": {"CNY": 7.20}})

        snap = run_cycle(self.state, self.cfg, self.feeds, now=T0 + timedelta(seconds=5))

        assert snap.price_usd == 2000.0
        assert snap.exchange_rate == 7.20
        assert snap.stored is True

    def test_open_price_rolls_on_shanghai_day(self):
        run_cycle(self.state, self.cfg, self.feeds, now=T0)
        self.feeds.set(SPOT_URL, spot(2010.0))
        # 23:00 Shanghai, same day
        snap = run_cycle(self.state, self.cfg, self.feeds, now=T0 + timedelta(hours=9))
        assert snap.open_usd == 2000.0

        self.feeds.set(SPOT_URL, spot(2020.0))
        # 00:30 Shanghai, next day
        snap = run_cycle(
            self.state, self.cfg, self.feeds, now=T0 + timedelta(hours=10, minutes=30)
        )
        assert snap.open_usd == 2020.0

    def test_domestic_derived_fields(self):
        snap = run_cycle(self.state, self.cfg, self.feeds, now=T0)

        assert snap.close_cny == pytest.approx(1990.0 * 7.10 / 31.1035)
        assert snap.change_cny == pytest.approx(10.0 * 7.10 / 31.1035)
        assert snap.open_cny == pytest.approx(snap.price_cny)

    def test_mirror_receives_stored_rows_only(self):
        mirror = MagicMock()
        run_cycle(self.state, self.cfg, self.feeds, mirror=mirror, now=T0)
        run_cycle(
            self.state, self.cfg, self.feeds, mirror=mirror, now=T0 + timedelta(seconds=5)
        )

        mirror.submit.assert_called_once()
        sent = mirror.submit.call_args.args[0]
        assert sent["timestamp"] == int(T0.timestamp() * 1000)
        assert sent["priceUsd"] == 2000.0
        assert sent["exchangeRate"] == 7.10

    def test_candles_aggregate_every_tick(self):
        run_cycle(self.state, self.cfg, self.feeds, now=T0)
        run_cycle(self.state, self.cfg, self.feeds, now=T0 + timedelta(seconds=5))
        self.feeds.set(SPOT_URL, spot(2005.0))
        run_cycle(self.state, self.cfg, self.feeds, now=T0 + timedelta(seconds=65))

        candles = self.state.candles.candles()
        assert len(candles) == 2
        assert candles[0].open == candles[0].close

    def test_configured_timeout_reaches_every_request(self):
        cfg = MonitorConfig(http_timeout_sec=3.0)
        self.feeds.set(FX_PRIMARY_URL, requests.exceptions.Timeout("slow"))

        run_cycle(MonitorState.create(cfg), cfg, self.feeds, now=T0)

        assert [url for url, _ in self.feeds.calls] == [FX_PRIMARY_URL, FX_BACKUP_URL, SPOT_URL]
        assert all(kw["timeout"] == 3.0 for _, kw in self.feeds.calls)


class TestPriceMirror:
    """Test persistence writes and history load."""

    def test_save_success(self):
        session = MagicMock()
        mirror = PriceMirror("http://api.local/", session=session)

        assert mirror.save({"timestamp": 1}) is True
        url = session.post.call_args.args[0]
        assert url == "http://api.local/api/price"
        mirror.close()

    def test_save_failure_is_swallowed(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")
        mirror = PriceMirror("http://api.local", session=session)

        assert mirror.save({"timestamp": 1}) is False
        mirror.close()

    def test_submit_runs_in_background(self):
        session = MagicMock()
        mirror = PriceMirror("http://api.local", session=session)

        future = mirror.submit({"timestamp": 1})

        assert future.result(timeout=5) is True
        mirror.close()

    def test_submit_drops_while_write_pending(self):
        started = threading.Event()
        release = threading.Event()

        def slow_post(*args, **kwargs):
            started.set()
            release.wait(5)
            return MagicMock()

        session = MagicMock()
        session.post.side_effect = slow_post
        mirror = PriceMirror("http://api.local", session=session)

        first = mirror.submit({"timestamp": 1})
        assert started.wait(5)
        assert mirror.submit({"timestamp": 2}) is None
        assert mirror.dropped == 1

        release.set()
        assert first.result(timeout=5) is True
        assert mirror.submit({"timestamp": 3}).result(timeout=5) is True
        assert session.post.call_count == 2
        mirror.close()

    def test_submit_after_close_is_dropped(self):
        session = MagicMock()
        mirror = PriceMirror("http://api.local", session=session)
        mirror.close()

        assert mirror.submit({"timestamp": 1}) is None
        session.post.assert_not_called()

    def test_load_history(self):
        session = MagicMock()
        session.get.return_value = json_response(
            {
                "success": True,
                "data": [
                    {"priceCny": 456.1, "timestamp": 1000},
                    {"priceCny": None, "timestamp": 2000},
                    {"priceCny": 456.3, "timestamp": 3000},
                ],
                "count": 3,
            }
        )
        mirror = PriceMirror("http://api.local", session=session)

        samples = mirror.load_history(2, 1440)

        assert samples == [PriceSample(456.1, 1000), PriceSample(456.3, 3000)]
        assert session.get.call_args.kwargs["params"] == {"hours": 2, "limit": 1440}
        mirror.close()

    def test_load_history_failure(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.Timeout("slow")
        mirror = PriceMirror("http://api.local", session=session)

        assert mirror.load_history(2, 10) == []
        mirror.close()


class TestRepeatingTask:
    """Test the run-in-progress guard."""

    def test_tick_runs_fn(self):
        calls = []
        task = RepeatingTask(5, lambda: calls.append(1))

        assert task.tick() is True
        assert calls == [1]

    def test_overlapping_tick_skipped(self):
        started = threading.Event()
        release = threading.Event()

        def slow():
            started.set()
            release.wait(5)

        task = RepeatingTask(5, slow)
        worker = threading.Thread(target=task.tick)
        worker.start()
        assert started.wait(5)

        assert task.tick() is False
        assert task.skipped == 1

        release.set()
        worker.join(5)
        assert task.tick() is True

    def test_exception_does_not_wedge_guard(self):
        def boom():
            raise RuntimeError("bad tick")

        task = RepeatingTask(5, boom)

        assert task.tick() is True
        assert task.tick() is True

    def test_start_stop(self):
        ran = threading.Event()
        task = RepeatingTask(0.01, ran.set)

        task.start()
        assert ran.wait(5)
        task.stop()
        assert task.wait(0) is True

    def test_stop_waits_for_run_in_flight(self):
        started = threading.Event()
        release = threading.Event()

        def slow():
            started.set()
            release.wait(5)

        task = RepeatingTask(5, slow)
        worker = threading.Thread(target=task.tick)
        worker.start()
        assert started.wait(5)

        assert task.stop(timeout=0.01) is False

        release.set()
        assert task.stop(timeout=5) is True
        worker.join(5)


class TestMonitor:
    """Test the update handler and bootstrap."""

    def test_update_skips_on_feed_error(self):
        feeds = FakeFeeds()
        feeds.set(SPOT_URL, requests.exceptions.ConnectionError("down"))
        render = MagicMock()
        m = Monitor(MonitorConfig(), session=feeds, renderers=[render])

        assert m.update() is None
        render.assert_not_called()
        assert len(m.state.history) == 0

    def test_update_calls_renderers(self):
        render = MagicMock()
        m = Monitor(MonitorConfig(), session=FakeFeeds(), renderers=[render])

        snap = m.update()

        assert snap is not None
        render.assert_called_once_with(m.state)

    def test_renderer_failure_is_contained(self):
        render = MagicMock(side_effect=RuntimeError("no display"))
        m = Monitor(MonitorConfig(), session=FakeFeeds(), renderers=[render])

        assert m.update() is not None

    def test_bootstrap_seeds_history(self):
        mirror = MagicMock()
        mirror.load_history.return_value = [PriceSample(1.0, 1), PriceSample(2.0, 2)]
        m = Monitor(MonitorConfig(api_base_url="http://x"), session=FakeFeeds(), mirror=mirror)

        assert m.bootstrap() == 2
        mirror.load_history.assert_called_once_with(2.0, 1440)

    def test_bootstrap_without_mirror(self):
        assert Monitor(MonitorConfig(), session=FakeFeeds()).bootstrap() == 0


class TestMonitorConfig:
    def test_defaults(self):
        cfg = MonitorConfig()
        assert cfg.capacity == 1440
        assert cfg.candle_width_ms == 60000

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("REFRESH_INTERVAL_SEC", "10")
        monkeypatch.setenv("HISTORY_HOURS", "1")
        monkeypatch.setenv("API_BASE_URL", "http://localhost:8787")

        cfg = MonitorConfig.from_env()

        assert cfg.capacity == 360
        assert cfg.api_base_url == "http://localhost:8787"
