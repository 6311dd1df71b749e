#!/usr/bin/env python3
"""
PEHCHAAN Profile Store
======================

SQLite persistence for visit profiles, household aggregates, identity
tokens and ultrasonic pairing sessions.

Features:
- Append-only profile table (only last_active and mouse fields are patched)
- Indexed candidate retrieval with a bounded latest-per-visitor fallback
- Household aggregates recomputed from profile counts on every write
- Idempotent pruning of duplicates, stale rows and idle tokens

Writes are serialized with a lock; readers open their own connection and
run concurrently under WAL journaling.

Author: Team PEHCHAAN
"""

import secrets
import sqlite3
import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from core.timestamps import format_timestamp, utc_now


# Insertable profile columns (id, created_at, last_active are managed here)
PROFILE_COLUMNS = (
    "visitor_id",
    "fingerprint",
    "device_id",
    "browser_id",
    "ip",
    "ip_subnet",
    "audio_sum",
    "timezone",
    "timezone_offset",
    "languages",
    "screen_width",
    "screen_height",
    "hardware_concurrency",
    "device_memory",
    "platform",
    "touch_support",
    "color_depth",
    "pointer_type",
    "wheel_delta_y",
    "wheel_delta_mode",
    "smooth_scroll",
    "movement_min_step",
    "household_id",
    "local_subnet",
    "battery_level",
    "battery_charging",
    "login_bitmask",
    "lan_topology",
)

# Mouse-dynamics columns patchable after the visit
MOUSE_COLUMNS = (
    "pointer_type",
    "wheel_delta_y",
    "wheel_delta_mode",
    "smooth_scroll",
    "movement_min_step",
)

# Exact-match keys used by the indexed candidate lookup
CANDIDATE_KEYS = ("device_id", "ip_subnet", "fingerprint")

DEFAULT_FALLBACK_LIMIT = 500


@dataclass
class PruneResult:
    """Row counts removed by one prune pass"""
    duplicates_removed: int = 0
    stale_removed: int = 0
    tokens_removed: int = 0
    households_removed: int = 0

    @property
    def total(self) -> int:
        return (self.duplicates_removed + self.stale_removed +
                self.tokens_removed + self.households_removed)

    def to_dict(self) -> dict:
        return asdict(self)


class ProfileStore:
    """
    SQLite-backed profile store.

    Handles:
    - Profile persistence and lookup
    - Candidate retrieval for the matchers
    - Household aggregates
    - Identity-token (secondary mapping) persistence
    - Ultrasonic pairing sessions
    - Pruning and statistics
    """

    def __init__(self, config: dict, db_path: Optional[str] = None):
        """
        Initialize profile store.

        Args:
            config: PEHCHAAN configuration dictionary
            db_path: Path to SQLite database (overrides config)
        """
        db_config = config.get("database", {})
        self.db_path = Path(db_path or db_config.get("path", "data/pehchaan.db"))
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = db_config.get("busy_timeout", 5.0)
        self.fallback_limit = config.get("matching", {}).get(
            "candidate_fallback_limit", DEFAULT_FALLBACK_LIMIT
        )

        # Single-writer lock
        self._write_lock = threading.Lock()

        self._init_database()
        logger.info(f"ProfileStore initialized ({self.db_path})")

    # =========================================================================
    # Connection / schema
    # =========================================================================

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        """Create tables and indexes."""
        conn = self._connect()
        cursor = conn.cursor()

        try:
            cursor.execute("PRAGMA journal_mode=WAL")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    visitor_id TEXT NOT NULL,
                    fingerprint TEXT,
                    device_id TEXT,
                    browser_id TEXT,
                    ip TEXT,
                    ip_subnet TEXT,
                    audio_sum REAL,
                    timezone TEXT,
                    timezone_offset INTEGER,
                    languages TEXT,
                    screen_width INTEGER,
                    screen_height INTEGER,
                    hardware_concurrency INTEGER,
                    device_memory REAL,
                    platform TEXT,
                    touch_support INTEGER,
                    color_depth INTEGER,
                    pointer_type TEXT,
                    wheel_delta_y REAL,
                    wheel_delta_mode INTEGER,
                    smooth_scroll INTEGER,
                    movement_min_step REAL,
                    household_id TEXT,
                    local_subnet TEXT,
                    battery_level REAL,
                    battery_charging INTEGER,
                    login_bitmask TEXT,
                    lan_topology TEXT,
                    created_at TEXT NOT NULL,
                    last_active TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_profiles_visitor_id ON profiles(visitor_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_profiles_device_id ON profiles(device_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_profiles_ip_subnet ON profiles(ip_subnet)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_profiles_fingerprint ON profiles(fingerprint)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_profiles_household_id ON profiles(household_id)")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS households (
                    id TEXT PRIMARY KEY,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    device_count INTEGER DEFAULT 0
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS identity_tokens (
                    token TEXT PRIMARY KEY,
                    visitor_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tokens_visitor_id ON identity_tokens(visitor_id)")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ultrasonic_sessions (
                    pairing_code INTEGER PRIMARY KEY,
                    visitor_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            conn.commit()
        finally:
            conn.close()

    def _execute_write(self, sql: str, params=()) -> sqlite3.Cursor:
        """Run one write statement under the writer lock."""
        with self._write_lock:
            conn = self._connect()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor
            except sqlite3.Error as e:
                conn.rollback()
                logger.error(f"ProfileStore write failed: {e}")
                raise
            finally:
                conn.close()

    def _fetch_all(self, sql: str, params=()) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def _fetch_one(self, sql: str, params=()) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute(sql, params).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    # =========================================================================
    # Profiles
    # =========================================================================

    def save_profile(self, fields: Mapping[str, Any], now: Optional[datetime] = None) -> int:
        """
        Append one profile row.

        Args:
            fields: Profile field map (unknown keys ignored, missing -> NULL)
            now: Insertion time (defaults to UTC now)

        Returns:
            New row id
        """
        if not fields.get("visitor_id"):
            raise ValueError("visitor_id is required")

        timestamp = format_timestamp(now)
        columns = list(PROFILE_COLUMNS) + ["created_at", "last_active"]
        values = [fields.get(c) for c in PROFILE_COLUMNS] + [timestamp, timestamp]
        placeholders = ", ".join("?" for _ in columns)

        cursor = self._execute_write(
            f"INSERT INTO profiles ({', '.join(columns)}) VALUES ({placeholders})",
            values
        )
        logger.debug(f"Saved profile {cursor.lastrowid} for visitor {fields['visitor_id']}")
        return cursor.lastrowid

    def get_profile(self, visitor_id: str) -> Optional[Dict[str, Any]]:
        """Most recently inserted profile for a visitor."""
        return self._fetch_one(
            "SELECT * FROM profiles WHERE visitor_id = ? ORDER BY id DESC LIMIT 1",
            (visitor_id,)
        )

    def get_profiles(self, visitor_id: str) -> List[Dict[str, Any]]:
        """All profiles for a visitor, newest first."""
        return self._fetch_all(
            "SELECT * FROM profiles WHERE visitor_id = ? ORDER BY id DESC",
            (visitor_id,)
        )

    def find_candidates(self, fields: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """
        Candidate profiles for the same-device matcher.

        One indexed lookup unions rows matching device_id OR ip_subnet OR
        fingerprint (whichever are present), newest first. If none of those
        keys are present or the lookup is empty, fall back to the latest row
        per visitor, most recently active first, capped at fallback_limit.
        """
        clauses = []
        params = []
        for key in CANDIDATE_KEYS:
            value = fields.get(key)
            if value:
                clauses.append(f"{key} = ?")
                params.append(value)

        if clauses:
            rows = self._fetch_all(
                f"SELECT * FROM profiles WHERE {' OR '.join(clauses)} ORDER BY id DESC",
                params
            )
            if rows:
                logger.debug(f"Indexed candidate lookup returned {len(rows)} rows")
                return rows

        rows = self._fetch_all("""
            SELECT p.* FROM profiles p
            JOIN (
                SELECT visitor_id, MAX(id) AS max_id FROM profiles GROUP BY visitor_id
            ) latest ON p.id = latest.max_id
            ORDER BY p.last_active DESC, p.id DESC
            LIMIT ?
        """, (self.fallback_limit,))
        logger.debug(f"Fallback candidate scan returned {len(rows)} rows")
        return rows

    def find_household_members(self, household_id: str) -> List[Dict[str, Any]]:
        """Latest profile of every visitor in a household, most recently active first."""
        if not household_id:
            return []

        return self._fetch_all("""
            SELECT p.* FROM profiles p
            JOIN (
                SELECT visitor_id, MAX(id) AS max_id FROM profiles
                WHERE household_id = ?
                GROUP BY visitor_id
            ) latest ON p.id = latest.max_id
            ORDER BY p.last_active DESC, p.id DESC
        """, (household_id,))

    def find_recent_profiles(self, minutes: int = 30, limit: int = 10,
                             now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Latest profile of visitors active within the last `minutes`."""
        cutoff = format_timestamp((now or utc_now()) - timedelta(minutes=minutes))
        return self._fetch_all("""
            SELECT p.* FROM profiles p
            JOIN (
                SELECT visitor_id, MAX(id) AS max_id FROM profiles GROUP BY visitor_id
            ) latest ON p.id = latest.max_id
            WHERE p.last_active >= ?
            ORDER BY p.last_active DESC
            LIMIT ?
        """, (cutoff, limit))

    def update_last_active(self, visitor_id: str, now: Optional[datetime] = None) -> int:
        """Bump last_active on every row of a visitor. Returns rows updated."""
        cursor = self._execute_write(
            "UPDATE profiles SET last_active = ? WHERE visitor_id = ?",
            (format_timestamp(now), visitor_id)
        )
        return cursor.rowcount

    def update_mouse(self, visitor_id: str, data: Mapping[str, Any]) -> bool:
        """
        Patch mouse-dynamics fields on the visitor's latest profile.

        Args:
            visitor_id: Visitor identifier
            data: Subset of MOUSE_COLUMNS

        Returns:
            True if a profile row was updated
        """
        updates = {c: data[c] for c in MOUSE_COLUMNS if c in data}
        if not updates:
            return False

        assignments = ", ".join(f"{c} = ?" for c in updates)
        cursor = self._execute_write(f"""
            UPDATE profiles SET {assignments}
            WHERE id = (SELECT MAX(id) FROM profiles WHERE visitor_id = ?)
        """, list(updates.values()) + [visitor_id])

        if cursor.rowcount:
            logger.debug(f"Updated mouse dynamics for visitor {visitor_id}")
        return cursor.rowcount > 0

    # =========================================================================
    # Households
    # =========================================================================

    def upsert_household(self, household_id: str, now: Optional[datetime] = None):
        """Create or refresh a household; device_count is recomputed from profiles."""
        if not household_id:
            return

        timestamp = format_timestamp(now)
        self._execute_write("""
            INSERT INTO households (id, first_seen, last_seen, device_count)
            VALUES (?, ?, ?, (SELECT COUNT(DISTINCT visitor_id) FROM profiles WHERE household_id = ?))
            ON CONFLICT(id) DO UPDATE SET
                last_seen = excluded.last_seen,
                device_count = excluded.device_count
        """, (household_id, timestamp, timestamp, household_id))

    def get_household(self, household_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM households WHERE id = ?", (household_id,))

    # =========================================================================
    # Identity tokens (server-held secondary mapping)
    # =========================================================================

    def set_token(self, visitor_id: str, now: Optional[datetime] = None) -> str:
        """
        Issue or refresh the token mapped to a visitor.

        Returns:
            The visitor's token (existing one reused)
        """
        timestamp = format_timestamp(now)

        with self._write_lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT token FROM identity_tokens WHERE visitor_id = ? ORDER BY updated_at DESC LIMIT 1",
                    (visitor_id,)
                ).fetchone()

                if row:
                    token = row["token"]
                    conn.execute("UPDATE identity_tokens SET updated_at = ? WHERE token = ?",
                                 (timestamp, token))
                else:
                    token = secrets.token_urlsafe(18)
                    conn.execute("""
                        INSERT INTO identity_tokens (token, visitor_id, created_at, updated_at)
                        VALUES (?, ?, ?, ?)
                    """, (token, visitor_id, timestamp, timestamp))
                    logger.info(f"Issued identity token for visitor {visitor_id}")

                conn.commit()
                return token
            except sqlite3.Error as e:
                conn.rollback()
                logger.error(f"Failed to store identity token: {e}")
                raise
            finally:
                conn.close()

    def get_token(self, token: str, now: Optional[datetime] = None) -> Optional[str]:
        """Resolve a token to its visitor id, refreshing its idle timer."""
        if not token:
            return None

        row = self._fetch_one("SELECT visitor_id FROM identity_tokens WHERE token = ?", (token,))
        if not row:
            return None

        self._execute_write("UPDATE identity_tokens SET updated_at = ? WHERE token = ?",
                            (format_timestamp(now), token))
        return row["visitor_id"]

    # =========================================================================
    # Ultrasonic pairing sessions
    # =========================================================================

    def create_ultrasonic_session(self, pairing_code: int, visitor_id: str,
                                  now: Optional[datetime] = None):
        self._execute_write("""
            INSERT OR REPLACE INTO ultrasonic_sessions (pairing_code, visitor_id, created_at)
            VALUES (?, ?, ?)
        """, (pairing_code, visitor_id, format_timestamp(now)))

    def find_ultrasonic_session(self, pairing_code: int, ttl_seconds: int = 300,
                                now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        cutoff = format_timestamp((now or utc_now()) - timedelta(seconds=ttl_seconds))
        return self._fetch_one(
            "SELECT * FROM ultrasonic_sessions WHERE pairing_code = ? AND created_at >= ?",
            (pairing_code, cutoff)
        )

    def prune_ultrasonic_sessions(self, ttl_seconds: int = 300,
                                  now: Optional[datetime] = None) -> int:
        cutoff = format_timestamp((now or utc_now()) - timedelta(seconds=ttl_seconds))
        cursor = self._execute_write("DELETE FROM ultrasonic_sessions WHERE created_at < ?", (cutoff,))
        return cursor.rowcount

    # =========================================================================
    # Maintenance / statistics
    # =========================================================================

    def prune(self, duplicate_retention_days: int = 7, stale_retention_days: int = 90,
              token_retention_days: int = 90, now: Optional[datetime] = None) -> PruneResult:
        """
        Remove superseded and expired rows.

        1. Rows older than duplicate_retention_days that are not the latest
           row of their visitor
        2. Rows older than stale_retention_days
        3. Identity tokens idle longer than token_retention_days
        4. Households with no remaining profiles

        A second pass immediately after the first removes nothing.
        """
        now = now or utc_now()
        duplicate_cutoff = format_timestamp(now - timedelta(days=duplicate_retention_days))
        stale_cutoff = format_timestamp(now - timedelta(days=stale_retention_days))
        token_cutoff = format_timestamp(now - timedelta(days=token_retention_days))

        result = PruneResult()

        with self._write_lock:
            conn = self._connect()
            try:
                result.duplicates_removed = conn.execute("""
                    DELETE FROM profiles
                    WHERE created_at < ?
                      AND id NOT IN (SELECT MAX(id) FROM profiles GROUP BY visitor_id)
                """, (duplicate_cutoff,)).rowcount

                result.stale_removed = conn.execute(
                    "DELETE FROM profiles WHERE created_at < ?", (stale_cutoff,)
                ).rowcount

                result.tokens_removed = conn.execute(
                    "DELETE FROM identity_tokens WHERE updated_at < ?", (token_cutoff,)
                ).rowcount

                result.households_removed = conn.execute("""
                    DELETE FROM households
                    WHERE id NOT IN (
                        SELECT DISTINCT household_id FROM profiles WHERE household_id IS NOT NULL
                    )
                """).rowcount

                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                logger.error(f"Prune failed: {e}")
                raise
            finally:
                conn.close()

        if result.total:
            logger.info(f"Pruned: {result.to_dict()}")
        return result

    def get_stats(self) -> Dict[str, int]:
        """Row counts for the health/stats endpoint."""
        conn = self._connect()
        try:
            return {
                "profiles": conn.execute("SELECT COUNT(*) FROM profiles").fetchone()[0],
                "visitors": conn.execute("SELECT COUNT(DISTINCT visitor_id) FROM profiles").fetchone()[0],
                "households": conn.execute("SELECT COUNT(*) FROM households").fetchone()[0],
                "tokens": conn.execute("SELECT COUNT(*) FROM identity_tokens").fetchone()[0]
            }
        finally:
            conn.close()
