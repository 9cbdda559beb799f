from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class MetricStorageError(Exception):
    pass


class SQLiteHealthDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Read-modify-write scope: takes the write lock before the first read."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS standard_metrics (
                  id TEXT PRIMARY KEY,
                  metric_key TEXT UNIQUE NOT NULL,
                  display_name TEXT NOT NULL,
                  category TEXT NOT NULL,
                  data_type TEXT NOT NULL,
                  unit TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_daily_metrics (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  metric_id TEXT NOT NULL REFERENCES standard_metrics(id) ON DELETE CASCADE,
                  metric_date TEXT NOT NULL,
                  metric_value REAL,
                  text_value TEXT,
                  boolean_value INTEGER,
                  source TEXT NOT NULL,
                  confidence REAL NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(user_id, metric_id, metric_date)
                );

                CREATE TABLE IF NOT EXISTS extraction_events (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  session_key TEXT NOT NULL,
                  metric_date TEXT NOT NULL,
                  source TEXT NOT NULL,
                  payload_kind TEXT NOT NULL,
                  app_type TEXT,
                  screenshot_type TEXT,
                  metrics_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS training_samples (
                  id TEXT PRIMARY KEY,
                  event_id TEXT NOT NULL,
                  user_id TEXT,
                  original_json TEXT NOT NULL,
                  corrected_json TEXT NOT NULL,
                  changed_keys_json TEXT NOT NULL,
                  raw_text TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_user_daily_metrics_user_date
                  ON user_daily_metrics(user_id, metric_date);
                CREATE INDEX IF NOT EXISTS idx_extraction_events_user_session
                  ON extraction_events(user_id, session_key, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_training_samples_created
                  ON training_samples(created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_training_samples_user
                  ON training_samples(user_id, created_at DESC);
                """
            )
