#!/usr/bin/env python3
import json
import logging
import math
import os
import sqlite3
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict
from urllib.parse import parse_qs, urlsplit

LOG = logging.getLogger("price_api")

DEFAULT_HOURS = 2
DEFAULT_LIMIT = 1000
HOUR_MS = 3600 * 1000

REQUIRED_FIELDS = ("priceUsd", "priceCny", "exchangeRate", "timestamp")

# (json key, column)
COLUMNS = [
    ("priceUsd", "price_usd"),
    ("priceCny", "price_cny"),
    ("exchangeRate", "exchange_rate"),
    ("changePercent", "change_percent"),
    ("changeAmount", "change_amount"),
    ("closePrice", "close_price"),
    ("openPrice", "open_price"),
    ("timestamp", "timestamp"),
]

_SELECT = "SELECT " + ", ".join(
    f"{col} AS {key}" for key, col in COLUMNS
) + " FROM gold_prices"


class ValidationError(ValueError):
    """Request body is missing something we need."""


class NotFound(LookupError):
    """No route for this method/path."""


@dataclass(frozen=True)
class APIConfig:
    host: str = "localhost"
    port: int = 8787
    db_path: str = "gold_prices.db"
    retention_hours: int = 720  # 0 keeps everything

    @classmethod
    def from_env(cls) -> "APIConfig":
        return cls(
            host=os.environ.get("PRICE_API_HOST", cls.host),
            port=int(os.environ.get("PRICE_API_PORT", cls.port)),
            db_path=os.environ.get("PRICE_DB", cls.db_path),
            retention_hours=int(
                os.environ.get("RETENTION_HOURS", cls.retention_hours)
            ),
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


class PriceStore:
    """Append-only price table. Opens a connection per call."""

    def __init__(self, db_path: str, retention_hours: int = 0):
        self.db_path = db_path
        self.retention_hours = retention_hours
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the price table if needed."""
        conn = self._connect()
        try:
            conn.execute(
                """
          CREATE TABLE IF NOT EXISTS gold_prices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            price_usd REAL NOT NULL,
            price_cny REAL NOT NULL,
            exchange_rate REAL NOT NULL,
            change_percent REAL,
            change_amount REAL,
            close_price REAL,
            open_price REAL,
            timestamp INTEGER NOT NULL      -- epoch ms
          )
        """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_gold_prices_timestamp "
                "ON gold_prices(timestamp)"
            )
            conn.commit()
        finally:
            conn.close()

    def insert(self, row: Dict[str, Any]) -> None:
        """Validate and append one row. Duplicate timestamps are allowed."""
        if not isinstance(row, dict):
            raise ValidationError("Body must be a JSON object")
        for field in REQUIRED_FIELDS:
            if row.get(field) is None:
                raise ValidationError(f"Missing required field: {field}")
        # TEXT sorts above every number in SQLite; keep the columns numeric.
        for key, _ in COLUMNS:
            value = row.get(key)
            if value is not None and not _is_number(value):
                raise ValidationError(f"Invalid numeric field: {key}")

        values = [row.get(key) for key, _ in COLUMNS]
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO gold_prices("
                + ", ".join(col for _, col in COLUMNS)
                + ") VALUES("
                + ", ".join("?" for _ in COLUMNS)
                + ")",
                values,
            )
            conn.commit()
        finally:
            conn.close()

        if self.retention_hours > 0:
            self.purge()

    def query_range(
        self, hours: float, limit: int, now_ms: int | None = None
    ) -> list[dict]:
        """Rows from the last ``hours``, oldest first, at most ``limit``."""
        ref = _now_ms() if now_ms is None else now_ms
        start = ref - int(hours * HOUR_MS)
        conn = self._connect()
        try:
            rows = conn.execute(
                _SELECT + " WHERE timestamp >= ? ORDER BY timestamp ASC, id ASC "
                "LIMIT ?",
                (start, int(limit)),
            ).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    def query_latest(self) -> dict | None:
        conn = self._connect()
        try:
            row = conn.execute(
                _SELECT + " ORDER BY timestamp DESC, id DESC LIMIT 1"
            ).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def purge(self, now_ms: int | None = None) -> int:
        """Drop rows older than the retention horizon."""
        if self.retention_hours <= 0:
            return 0
        ref = _now_ms() if now_ms is None else now_ms
        cutoff = ref - self.retention_hours * HOUR_MS
        conn = self._connect()
        try:
            cur = conn.execute(
                "DELETE FROM gold_prices WHERE timestamp < ?", (cutoff,)
            )
            conn.commit()
            removed = cur.rowcount
        finally:
            conn.close()
        if removed:
            LOG.info("retention: purged %d rows older than %d", removed, cutoff)
        return removed


def _int_param(query: Dict[str, list], name: str, default: int) -> int:
    # Missing, non-numeric or zero values fall back to the default.
    try:
        value = int(query.get(name, [""])[0])
    except ValueError:
        return default
    return value or default


class PriceAPI:
    """Routes requests onto a PriceStore and returns ``(status, payload)``."""

    def __init__(self, store: PriceStore):
        self.store = store

    def handle(
        self, method: str, path: str, query: Dict[str, list], body: bytes
    ) -> tuple[int, Dict[str, Any] | None]:
        if method == "OPTIONS":
            return 204, None
        try:
            return self._route(method, path, query, body)
        except ValidationError as e:
            return 400, {"error": str(e)}
        except NotFound:
            return 404, {"error": "Not found"}
        except Exception as e:
            LOG.exception("API error on %s %s", method, path)
            return 500, {"error": str(e)}

    def _route(self, method, path, query, body):
        if path == "/api/price" and method == "POST":
            return self.save_price(body)
        if path == "/api/prices" and method == "GET":
            return self.get_prices(query)
        if path == "/api/prices/latest" and method == "GET":
            return self.get_latest()
        if path == "/api/health" and method == "GET":
            return 200, {"status": "ok", "message": "API is running"}
        raise NotFound(path)

    def save_price(self, body: bytes):
        try:
            row = json.loads(body or b"null")
        except ValueError:
            raise ValidationError("Invalid JSON body")
        try:
            self.store.insert(row)
        except ValidationError:
            raise
        except sqlite3.Error as e:
            LOG.error("save price failed: %s", e)
            return 500, {"error": "Failed to save price"}
        return 200, {"success": True, "message": "Price saved successfully"}

    def get_prices(self, query: Dict[str, list]):
        hours = _int_param(query, "hours", DEFAULT_HOURS)
        limit = _int_param(query, "limit", DEFAULT_LIMIT)
        try:
            rows = self.store.query_range(hours, limit)
        except sqlite3.Error as e:
            LOG.error("get prices failed: %s", e)
            return 500, {"error": "Failed to get prices"}
        return 200, {"success": True, "data": rows, "count": len(rows)}

    def get_latest(self):
        try:
            row = self.store.query_latest()
        except sqlite3.Error as e:
            LOG.error("get latest price failed: %s", e)
            return 500, {"error": "Failed to get latest price"}
        if row is None:
            return 200, {"success": True, "data": None, "message": "No data found"}
        return 200, {"success": True, "data": row}


def make_handler(api: PriceAPI):
    """Bind a request handler class to ``api``."""

    class Handler(BaseHTTPRequestHandler):
        def _dispatch(self):
            parts = urlsplit(self.path)
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = -1
            if length < 0:
                self._send(400, {"error": "Invalid Content-Length"})
                return
            body = self.rfile.read(length) if length else b""
            status, payload = api.handle(
                self.command, parts.path, parse_qs(parts.query), body
            )
            self._send(status, payload)

        def _send(self, status: int, payload):
            self.send_response(status)
            self.send_header("Access-Control-Allow-Origin", "*")
            if payload is None:
                self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
                self.send_header("Access-Control-Allow-Headers", "Content-Type")
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
            raw = data.encode("utf-8")
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(raw)))
            self.end_headers()
            self.wfile.write(raw)

        do_GET = _dispatch
        do_POST = _dispatch
        do_OPTIONS = _dispatch
        do_PUT = _dispatch
        do_DELETE = _dispatch

        def log_message(self, format, *args):
            LOG.debug("%s - %s", self.address_string(), format % args)

    return Handler


def make_server(cfg: APIConfig) -> ThreadingHTTPServer:
    store = PriceStore(cfg.db_path, cfg.retention_hours)
    return ThreadingHTTPServer((cfg.host, cfg.port), make_handler(PriceAPI(store)))


def main():
    """Serve the price API until interrupted."""
    log_level = logging.DEBUG if os.environ.get("DEBUG") else logging.INFO
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s: %(message)s"
    )

    cfg = APIConfig.from_env()
    server = make_server(cfg)
    LOG.info(
        "price API on http://%s:%d (db=%s, retention=%dh)",
        cfg.host,
        cfg.port,
        cfg.db_path,
        cfg.retention_hours,
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOG.info("shutting down")
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
