import json
import sqlite3
from contextlib import closing
from typing import Optional

from inbox_triage.config import settings
from inbox_triage.logger import get_logger
from inbox_triage.state import TriageResult

logger = get_logger(__name__)


def _connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or settings.database_path)
    conn.row_factory = sqlite3.Row
    return conn


def _dump(model) -> Optional[str]:
    if model is None:
        return None
    return json.dumps(model.model_dump(mode="json"))


def init_db(db_path: Optional[str] = None):
    """Creates the sessions table if it doesn't exist."""
    with closing(_connect(db_path)) as conn, conn:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS triage_sessions (
                session_id TEXT PRIMARY KEY,
                email_id TEXT,
                status TEXT NOT NULL,
                priority TEXT,
                category TEXT,
                classification TEXT,
                summary TEXT,
                reply_draft TEXT,
                error TEXT,
                processed_at TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_sessions_email_id ON triage_sessions (email_id)')
    logger.info("Database initialized", extra={"path": db_path or settings.database_path})


def save_session(result: TriageResult, db_path: Optional[str] = None) -> bool:
    """
    Persist the terminal fields of a run. Re-saving a session id replaces it.

    Returns False (and logs) on database errors.
    """
    classification = result.classification
    try:
        # New connection per call so worker threads never share one
        with closing(_connect(db_path)) as conn, conn:
            conn.execute('''
                INSERT OR REPLACE INTO triage_sessions
                    (session_id, email_id, status, priority, category,
                     classification, summary, reply_draft, error, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                result.session_id,
                result.email_id,
                result.status,
                classification.priority if classification else None,
                classification.category if classification else None,
                _dump(classification),
                _dump(result.summary),
                _dump(result.reply_draft),
                result.error.message if result.error else None,
                result.processed_at.isoformat(),
            ))
    except sqlite3.Error as e:
        logger.error("Database error saving session", extra={"session_id": result.session_id, "error": str(e)})
        return False

    logger.debug("Session saved", extra={"session_id": result.session_id, "status": result.status})
    return True


def get_session(session_id: str, db_path: Optional[str] = None) -> Optional[dict]:
    with closing(_connect(db_path)) as conn, conn:
        row = conn.execute(
            'SELECT * FROM triage_sessions WHERE session_id = ?', (session_id,)
        ).fetchone()

    if row is None:
        return None

    session = dict(row)
    for column in ("classification", "summary", "reply_draft"):
        if session[column]:
            session[column] = json.loads(session[column])
    return session
