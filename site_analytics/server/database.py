from __future__ import annotations

import os
import secrets
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .records import SQLITE_INT_MAX, AnalyticsRecord

SITE_ACTIVE = "active"
SITE_DELETED = "deleted"

_RECORD_COLUMNS = (
    "site_id",
    "session_id",
    "visitor_id",
    "ip_hash",
    "user_agent",
    "browser",
    "browser_version",
    "os",
    "device",
    "device_type",
    "screen_resolution",
    "language",
    "referrer",
    "url",
    "path",
    "query",
    "event_type",
    "custom_event",
    "event_name",
    "event_data",
    "session_start",
    "session_duration",
    "load_time",
    "bandwidth",
    "is_bot",
    "bot_name",
    "ts",
    "date",
)


@dataclass(frozen=True)
class DatabaseConfig:
    sqlite_path: str


@dataclass(frozen=True)
class Site:
    site_id: str
    name: str
    status: str
    analytics_enabled: bool = True
    exclude_admin: bool = True
    total_hits: int = 0
    total_sessions: int = 0
    last_hit_ts: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == SITE_ACTIVE

    @property
    def accepts_hits(self) -> bool:
        return self.is_active and self.analytics_enabled

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Site":
        return cls(
            site_id=str(row["site_id"]),
            name=str(row["name"] or ""),
            status=str(row["status"]),
            analytics_enabled=bool(row["analytics_enabled"]),
            exclude_admin=bool(row["exclude_admin"]),
            total_hits=int(row["total_hits"]),
            total_sessions=int(row["total_sessions"]),
            last_hit_ts=row["last_hit_ts"],
        )


def _dict_factory(cursor: sqlite3.Cursor, row: Tuple[Any, ...]) -> Dict[str, Any]:
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


class Database:
    def __init__(self, cfg: DatabaseConfig):
        self.cfg = cfg
        self._ensure_parent_dir()
        self._init_schema()

    def _ensure_parent_dir(self) -> None:
        path = os.path.abspath(self.cfg.sqlite_path)
        parent = os.path.dirname(path)
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.cfg.sqlite_path, check_same_thread=False, timeout=15.0)
        conn.row_factory = _dict_factory
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def _init_schema(self) -> None:
        conn = self.connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sites (
                  site_id TEXT PRIMARY KEY,
                  name TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL DEFAULT 'active',
                  analytics_enabled INTEGER NOT NULL DEFAULT 1,
                  exclude_admin INTEGER NOT NULL DEFAULT 1,
                  total_hits INTEGER NOT NULL DEFAULT 0,
                  total_sessions INTEGER NOT NULL DEFAULT 0,
                  last_hit_ts INTEGER,
                  created_at INTEGER NOT NULL,
                  updated_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS analytics (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  site_id TEXT NOT NULL,
                  session_id TEXT NOT NULL,
                  visitor_id TEXT NOT NULL,
                  ip_hash TEXT,
                  user_agent TEXT NOT NULL DEFAULT '',
                  browser TEXT NOT NULL DEFAULT '',
                  browser_version TEXT NOT NULL DEFAULT '',
                  os TEXT NOT NULL DEFAULT '',
                  device TEXT NOT NULL DEFAULT '',
                  device_type TEXT NOT NULL DEFAULT 'desktop',
                  screen_resolution TEXT NOT NULL DEFAULT '',
                  language TEXT NOT NULL DEFAULT '',
                  referrer TEXT NOT NULL DEFAULT '',
                  url TEXT NOT NULL DEFAULT '/',
                  path TEXT NOT NULL DEFAULT '/',
                  query TEXT NOT NULL DEFAULT '{}',
                  event_type TEXT NOT NULL DEFAULT 'pageview',
                  custom_event INTEGER NOT NULL DEFAULT 0,
                  event_name TEXT,
                  event_data TEXT NOT NULL DEFAULT '{}',
                  session_start INTEGER NOT NULL DEFAULT 0,
                  session_duration INTEGER NOT NULL DEFAULT 0,
                  load_time INTEGER,
                  bandwidth INTEGER NOT NULL DEFAULT 0,
                  is_bot INTEGER NOT NULL DEFAULT 0,
                  bot_name TEXT,
                  ts INTEGER NOT NULL,
                  date TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_analytics_site_ts ON analytics(site_id, ts);
                CREATE INDEX IF NOT EXISTS idx_analytics_site_date ON analytics(site_id, date);
                CREATE INDEX IF NOT EXISTS idx_analytics_visitor ON analytics(visitor_id);
                """
            )
            conn.commit()
        finally:
            conn.close()

    # -------- sites --------
    def create_site(
        self,
        *,
        name: str,
        site_id: Optional[str] = None,
        status: str = SITE_ACTIVE,
        analytics_enabled: bool = True,
        exclude_admin: bool = True,
    ) -> str:
        sid = site_id or secrets.token_hex(12)
        now = int(time.time())
        conn = self.connect()
        try:
            conn.execute(
                """
                INSERT INTO sites(site_id, name, status, analytics_enabled, exclude_admin, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (sid, name, status, int(analytics_enabled), int(exclude_admin), now, now),
            )
            conn.commit()
            return sid
        finally:
            conn.close()

    def find_site(self, site_id: str) -> Optional[Site]:
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT * FROM sites WHERE site_id = ? AND status != ?",
                (site_id, SITE_DELETED),
            ).fetchone()
        finally:
            conn.close()
        return Site.from_row(row) if row else None

    def set_site_status(self, site_id: str, status: str) -> bool:
        return self._update_site(site_id, "status = ?", (status,))

    def set_analytics_enabled(self, site_id: str, enabled: bool) -> bool:
        return self._update_site(site_id, "analytics_enabled = ?", (int(enabled),))

    def _update_site(self, site_id: str, assignment: str, params: Tuple[Any, ...]) -> bool:
        conn = self.connect()
        try:
            cur = conn.execute(
                f"UPDATE sites SET {assignment}, updated_at = ? WHERE site_id = ?",
                (*params, int(time.time()), site_id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def increment_site_counters(self, site_id: str, *, hits: int = 0, sessions: int = 0) -> bool:
        """
        Atomic in-place increment; counters are never recomputed from the hits table.
        """
        now = int(time.time())
        conn = self.connect()
        try:
            cur = conn.execute(
                """
                UPDATE sites
                SET total_hits = total_hits + ?,
                    total_sessions = total_sessions + ?,
                    last_hit_ts = ?,
                    updated_at = ?
                WHERE site_id = ?
                """,
                (hits, sessions, now, now, site_id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    # -------- analytics records --------
    def insert_record(self, record: AnalyticsRecord) -> int:
        row = record.to_row()
        placeholders = ", ".join("?" for _ in _RECORD_COLUMNS)
        conn = self.connect()
        try:
            cur = conn.execute(
                f"INSERT INTO analytics({', '.join(_RECORD_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in _RECORD_COLUMNS),
            )
            conn.commit()
            return int(cur.lastrowid)
        finally:
            conn.close()

    def recent_records(self, site_id: str, *, limit: int = 200) -> List[Dict[str, Any]]:
        conn = self.connect()
        try:
            return list(
                conn.execute(
                    "SELECT * FROM analytics WHERE site_id = ? ORDER BY ts DESC, id DESC LIMIT ?",
                    (site_id, limit),
                ).fetchall()
            )
        finally:
            conn.close()

    # -------- aggregates (bots excluded) --------
    def totals(self, site_id: str, *, since_ts: int = 0, until_ts: Optional[int] = None) -> Dict[str, Any]:
        """Aggregates over [since_ts, until_ts); open-ended when until_ts is None."""
        conn = self.connect()
        try:
            row = conn.execute(
                """
                SELECT COUNT(1) AS hits,
                       COUNT(DISTINCT ip_hash) AS unique_visitors,
                       COALESCE(SUM(CASE WHEN event_type = 'pageview' THEN 1 ELSE 0 END), 0) AS pageviews,
                       COALESCE(SUM(CASE WHEN event_type = 'event' OR custom_event = 1 THEN 1 ELSE 0 END), 0) AS events,
                       COALESCE(SUM(bandwidth), 0) AS bandwidth,
                       AVG(load_time) AS avg_load_time
                FROM analytics
                WHERE site_id = ? AND ts >= ? AND ts < ? AND is_bot = 0
                """,
                (site_id, since_ts, until_ts if until_ts is not None else SQLITE_INT_MAX),
            ).fetchone()
            return dict(row)
        finally:
            conn.close()

    def time_series(self, site_id: str, *, group_by: str, since_ts: int) -> List[Dict[str, Any]]:
        """
        group_by: 'day' or 'month'
        Returns: [{period, hits, unique_visitors, pageviews, bandwidth}]
        """
        if group_by not in ("day", "month"):
            raise ValueError("group_by must be 'day' or 'month'")
        period = "date" if group_by == "day" else "substr(date, 1, 7)"
        conn = self.connect()
        try:
            return list(
                conn.execute(
                    f"""
                    SELECT {period} AS period,
                           COUNT(1) AS hits,
                           COUNT(DISTINCT ip_hash) AS unique_visitors,
                           SUM(CASE WHEN event_type = 'pageview' THEN 1 ELSE 0 END) AS pageviews,
                           SUM(bandwidth) AS bandwidth
                    FROM analytics
                    WHERE site_id = ? AND ts >= ? AND is_bot = 0
                    GROUP BY period
                    ORDER BY period ASC
                    """,
                    (site_id, since_ts),
                ).fetchall()
            )
        finally:
            conn.close()

    def breakdown(self, site_id: str, *, column: str, since_ts: int, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Top-N grouping for one of: path, referrer, device_type, browser.
        Only pageviews count towards the 'path' breakdown.
        """
        if column not in ("path", "referrer", "device_type", "browser"):
            raise ValueError(f"unsupported breakdown column: {column}")
        extra = ""
        if column == "path":
            extra = "AND event_type = 'pageview'"
        elif column == "referrer":
            extra = "AND referrer != ''"
        conn = self.connect()
        try:
            return list(
                conn.execute(
                    f"""
                    SELECT {column} AS value,
                           COUNT(1) AS hits,
                           COUNT(DISTINCT ip_hash) AS unique_visitors,
                           AVG(load_time) AS avg_load_time
                    FROM analytics
                    WHERE site_id = ? AND ts >= ? AND is_bot = 0 {extra}
                    GROUP BY {column}
                    ORDER BY hits DESC
                    LIMIT ?
                    """,
                    (site_id, since_ts, limit),
                ).fetchall()
            )
        finally:
            conn.close()

    def bandwidth_usage(self, site_id: str, *, since_ts: int) -> List[Dict[str, Any]]:
        """
        Per-day transfer for hits that reported bandwidth.
        Returns: [{date, bandwidth, requests, bandwidth_per_request}]
        """
        conn = self.connect()
        try:
            return list(
                conn.execute(
                    """
                    SELECT date,
                           SUM(bandwidth) AS bandwidth,
                           COUNT(1) AS requests,
                           CAST(SUM(bandwidth) AS REAL) / COUNT(1) AS bandwidth_per_request
                    FROM analytics
                    WHERE site_id = ? AND ts >= ? AND bandwidth > 0 AND is_bot = 0
                    GROUP BY date
                    ORDER BY date ASC
                    """,
                    (site_id, since_ts),
                ).fetchall()
            )
        finally:
            conn.close()

    def active_sessions(self, site_id: str, *, since_ts: int) -> List[Dict[str, Any]]:
        """
        Sessions seen since since_ts, most recent first. current_page and device
        come from the session's latest hit.
        """
        conn = self.connect()
        try:
            return list(
                conn.execute(
                    """
                    SELECT s.session_id, s.visitor_id, s.last_seen, s.page_count,
                           latest.path AS current_page,
                           latest.device_type AS device
                    FROM (
                        SELECT session_id, visitor_id, MAX(ts) AS last_seen, MAX(id) AS last_id,
                               COUNT(1) AS page_count
                        FROM analytics
                        WHERE site_id = ? AND ts >= ? AND is_bot = 0
                        GROUP BY session_id, visitor_id
                    ) AS s
                    JOIN analytics AS latest ON latest.id = (
                        SELECT a.id FROM analytics AS a
                        WHERE a.site_id = ? AND a.session_id = s.session_id AND a.visitor_id = s.visitor_id
                          AND a.ts >= ? AND a.is_bot = 0
                        ORDER BY a.ts DESC, a.id DESC
                        LIMIT 1
                    )
                    ORDER BY s.last_seen DESC, s.last_id DESC
                    """,
                    (site_id, since_ts, site_id, since_ts),
                ).fetchall()
            )
        finally:
            conn.close()

    # -------- retention --------
    def purge_before(self, ts: int) -> int:
        """Delete records older than ts across all sites; returns how many went."""
        conn = self.connect()
        try:
            cur = conn.execute("DELETE FROM analytics WHERE ts < ?", (ts,))
            conn.commit()
            return int(cur.rowcount)
        finally:
            conn.close()
