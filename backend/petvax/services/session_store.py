import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict

from petvax.models import ACTION_KINDS, Session
from petvax.services.errors import SessionConflictError, StorageError

EXPECT_STATES = {"none", "awaiting_followup", "awaiting_field"}
PENDING_ACTIONS = {"none", "add_vaccine", "attach_photo", "collect"}


class SessionStore:
    """Per-user conversation state keyed by the transport's user id.

    Every read goes to sqlite; nothing is cached in process. Writes carry
    the version that was read and fail if another turn saved in between.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS sessions (
                        user_id TEXT PRIMARY KEY,
                        expect TEXT NOT NULL DEFAULT 'none',
                        expect_field TEXT,
                        pending_action TEXT NOT NULL DEFAULT 'none',
                        pending_kind TEXT,
                        partial_json TEXT NOT NULL DEFAULT '{}',
                        last_pet_name TEXT,
                        version INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()

    def load(self, user_id: str) -> Session:
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute(
                        "SELECT * FROM sessions WHERE user_id = ?",
                        (user_id,),
                    ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"session read failed: {exc}") from exc

        if not row:
            return Session(user_id=user_id)

        expect = row["expect"] if row["expect"] in EXPECT_STATES else "none"
        pending = row["pending_action"] if row["pending_action"] in PENDING_ACTIONS else "none"
        return Session(
            user_id=user_id,
            expect=expect,
            expect_field=row["expect_field"] if expect == "awaiting_field" else None,
            pending_action=pending,
            pending_kind=row["pending_kind"] if row["pending_kind"] in ACTION_KINDS else None,
            partial=self._safe_json_object(row["partial_json"]),
            last_pet_name=row["last_pet_name"],
            updated_at=row["updated_at"],
            version=int(row["version"]),
        )

    def save(self, session: Session) -> Session:
        now = datetime.now(timezone.utc).isoformat()
        values = (
            session.expect,
            session.expect_field,
            session.pending_action,
            session.pending_kind,
            json.dumps(session.partial, ensure_ascii=False),
            session.last_pet_name,
        )
        try:
            with self._lock:
                with self._connect() as conn:
                    if session.version == 0:
                        cursor = conn.execute(
                            """
                            INSERT OR IGNORE INTO sessions (
                                user_id, expect, expect_field, pending_action, pending_kind,
                                partial_json, last_pet_name, version, updated_at
                            )
                            VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
                            """,
                            (session.user_id, *values, now),
                        )
                    else:
                        cursor = conn.execute(
                            """
                            UPDATE sessions SET
                                expect = ?,
                                expect_field = ?,
                                pending_action = ?,
                                pending_kind = ?,
                                partial_json = ?,
                                last_pet_name = ?,
                                version = version + 1,
                                updated_at = ?
                            WHERE user_id = ? AND version = ?
                            """,
                            (*values, now, session.user_id, session.version),
                        )
                    conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"session write failed: {exc}") from exc

        if cursor.rowcount != 1:
            raise SessionConflictError(f"session for {session.user_id} changed since version {session.version}")
        session.version += 1
        session.updated_at = now
        return session

    def _safe_json_object(self, raw_value: Any) -> Dict[str, Any]:
        if raw_value in (None, ""):
            return {}
        if isinstance(raw_value, dict):
            return raw_value
        if not isinstance(raw_value, str):
            return {}
        try:
            parsed = json.loads(raw_value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
