#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Capture History                                 ║
║                  Thread-safe SQLite with WAL mode                            ║
╚══════════════════════════════════════════════════════════════════════════════╝

Purpose:
  - One row per search session (selections, status, timestamps)
  - One row per record capture attempt (saved / failed / skipped)
  - Export to CSV

data.json stays the lightweight URL log; this is the queryable history.

Author: POWER-IGR Team
Version: 1.0.0
"""

import sqlite3
import json
import logging
import threading
import csv
from pathlib import Path
from typing import List, Dict, Optional
from contextlib import contextmanager

from igr_config import Config
from session_models import CaptureResult, Selections

logger = logging.getLogger('CaptureHistory')


class CaptureHistory:
    """
    Thread-safe SQLite history shared by all session workers.

    Database Schema:
    - search_sessions: one row per registry session
    - captures: one row per IndexII record attempted
    """

    DB_VERSION = 1

    def __init__(self, db_path: str = None):
        self.db_path = Path(db_path or Config.DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._init_database()

        logger.info(f"History database: {self.db_path}")

    @contextmanager
    def get_connection(self):
        """Get database connection (thread-safe)"""
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA journal_mode=WAL')
        try:
            yield conn
        finally:
            conn.close()

    def _init_database(self):
        with self._lock:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute('''
                    CREATE TABLE IF NOT EXISTS search_sessions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id TEXT UNIQUE NOT NULL,
                        year TEXT,
                        district TEXT,
                        taluka TEXT,
                        village TEXT,
                        property_id TEXT,
                        selections TEXT,
                        status TEXT DEFAULT 'idle',
                        started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        completed_at TIMESTAMP,
                        captcha_attempts INTEGER DEFAULT 0,
                        total_records INTEGER DEFAULT 0,
                        saved_records INTEGER DEFAULT 0,
                        notes TEXT
                    )
                ''')

                cursor.execute('''
                    CREATE TABLE IF NOT EXISTS captures (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id TEXT NOT NULL,
                        record_index INTEGER NOT NULL,
                        row_description TEXT,
                        output_path TEXT,
                        document_url TEXT,
                        status TEXT NOT NULL,
                        reason TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (session_id) REFERENCES search_sessions(session_id)
                    )
                ''')

                cursor.execute('CREATE INDEX IF NOT EXISTS idx_captures_session ON captures(session_id)')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_captures_status ON captures(status)')

                cursor.execute('''
                    CREATE TABLE IF NOT EXISTS db_meta (
                        key TEXT PRIMARY KEY,
                        value TEXT
                    )
                ''')
                cursor.execute('INSERT OR REPLACE INTO db_meta (key, value) VALUES (?, ?)',
                               ('version', str(self.DB_VERSION)))

                conn.commit()

    # ═══════════════════════════════════════════════════════════════════════
    # SESSIONS
    # ═══════════════════════════════════════════════════════════════════════

    def create_session(self, session_id: str, selections: Selections = None):
        """Register a session; a second call for the same id updates its selections"""
        selections = selections or Selections()
        with self._lock:
            with self.get_connection() as conn:
                conn.execute('''
                    INSERT INTO search_sessions (
                        session_id, year, district, taluka, village, property_id, selections
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(session_id) DO UPDATE SET
                        year = excluded.year,
                        district = excluded.district,
                        taluka = excluded.taluka,
                        village = excluded.village,
                        property_id = excluded.property_id,
                        selections = excluded.selections,
                        updated_at = CURRENT_TIMESTAMP
                ''', (
                    session_id,
                    selections.year,
                    selections.district,
                    selections.taluka,
                    selections.village,
                    selections.property_id,
                    json.dumps(selections.to_dict()),
                ))
                conn.commit()

        logger.info(f"📝 Session recorded: {session_id}")

    def update_session_status(self, session_id: str, status: str, **kwargs):
        """Update status plus any of captcha_attempts, total_records, saved_records, notes"""
        with self._lock:
            with self.get_connection() as conn:
                updates = ['status = ?', 'updated_at = CURRENT_TIMESTAMP']
                values = [status]

                if status in ('completed', 'failed', 'closed'):
                    updates.append('completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP)')

                for key, value in kwargs.items():
                    if key in ('captcha_attempts', 'total_records', 'saved_records', 'notes'):
                        updates.append(f'{key} = ?')
                        values.append(value)

                values.append(session_id)
                conn.execute(f'''
                    UPDATE search_sessions SET {', '.join(updates)} WHERE session_id = ?
                ''', values)
                conn.commit()

    def get_session(self, session_id: str) -> Optional[Dict]:
        with self.get_connection() as conn:
            row = conn.execute(
                'SELECT * FROM search_sessions WHERE session_id = ?', (session_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_recent_sessions(self, limit: int = 20) -> List[Dict]:
        with self.get_connection() as conn:
            rows = conn.execute(
                'SELECT * FROM search_sessions ORDER BY started_at DESC, id DESC LIMIT ?', (limit,)
            ).fetchall()
            return [dict(row) for row in rows]

    # ═══════════════════════════════════════════════════════════════════════
    # CAPTURES
    # ═══════════════════════════════════════════════════════════════════════

    def record_capture(self, session_id: str, result: CaptureResult):
        with self._lock:
            with self.get_connection() as conn:
                conn.execute('''
                    INSERT INTO captures (
                        session_id, record_index, row_description,
                        output_path, document_url, status, reason
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ''', (
                    session_id,
                    result.record_index,
                    result.source_row_description,
                    result.output_path,
                    result.document_url,
                    result.status.value,
                    result.reason,
                ))
                conn.commit()

    def get_captures(self, session_id: str) -> List[Dict]:
        with self.get_connection() as conn:
            rows = conn.execute('''
                SELECT * FROM captures WHERE session_id = ? ORDER BY record_index, id
            ''', (session_id,)).fetchall()
            return [dict(row) for row in rows]

    # ═══════════════════════════════════════════════════════════════════════
    # CSV EXPORT
    # ═══════════════════════════════════════════════════════════════════════

    def export_to_csv(self, session_id: str, output_path: str, saved_only: bool = False) -> int:
        """Export a session's captures to CSV. Returns the number of rows written."""
        query = 'SELECT * FROM captures WHERE session_id = ?'
        if saved_only:
            query += " AND status = 'saved'"
        query += ' ORDER BY record_index, id'

        with self.get_connection() as conn:
            rows = conn.execute(query, (session_id,)).fetchall()

        if not rows:
            logger.warning(f"No captures to export for session {session_id}")
            return 0

        with open(output_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=rows[0].keys())
            writer.writeheader()
            for row in rows:
                writer.writerow(dict(row))

        logger.info(f"Exported {len(rows)} captures to {output_path}")
        return len(rows)
