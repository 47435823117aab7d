import json
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

import pymysql

from app.core.settings import Settings


def parse_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return None


def to_plain(value: Any) -> Any:
    """Convert driver values (datetimes, decimals, bytes) to JSON-safe values."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        # MySQL TIME columns come back as timedelta
        total = int(value.total_seconds())
        return f"{total // 3600:02d}:{(total % 3600) // 60:02d}"
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return value


def plain_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {key: to_plain(value) for key, value in row.items()}


class Database:
    """Read-only access to the attendance schema.

    Every statement goes through ``fetch_all``/``fetch_one`` with bound
    parameters; the connection is opened per call and rolled back on exit so
    nothing issued here can persist.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def connect(self):
        return pymysql.connect(
            host=self.settings.mysql_host,
            port=self.settings.mysql_port,
            user=self.settings.mysql_user,
            password=self.settings.mysql_password,
            database=self.settings.mysql_database,
            charset="utf8mb4",
            cursorclass=pymysql.cursors.DictCursor,
            autocommit=False,
            connect_timeout=self.settings.mysql_connect_timeout_sec,
            read_timeout=self.settings.chat_storage_timeout_sec,
        )

    @contextmanager
    def cursor(self) -> Iterator[Any]:
        conn = self.connect()
        try:
            with conn.cursor() as cursor:
                yield cursor
        finally:
            conn.rollback()
            conn.close()

    def fetch_all(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(sql, params)
            rows = cursor.fetchall() or []
        return [plain_row(row) for row in rows]

    def fetch_one(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(sql, params)
            row = cursor.fetchone()
        return plain_row(row)
