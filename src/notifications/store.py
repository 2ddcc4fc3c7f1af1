"""Persistence for user notifications.

The ``notifications`` table is the durable source of truth for delivery: a
client that missed a live push recovers by fetching its unread rows.
"""

from __future__ import annotations

import sqlite3
from contextlib import closing
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from results import new_identifier, utcnow

__all__ = ["Notification", "NotificationCategory", "NotificationStore", "Severity"]


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationCategory(str, Enum):
    RESULT_SUBMISSION = "result_submission"
    COMPLAINT = "complaint"
    VERIFICATION = "verification"
    SYSTEM = "system"
    USER_ACTION = "user_action"


@dataclass(slots=True)
class Notification:
    id: str
    title: str
    message: str
    severity: Severity
    category: NotificationCategory
    target_user_id: str
    related_result_id: Optional[str] = None
    is_read: bool = False
    created_at: str = ""

    def dict(self) -> Dict[str, object]:
        raw = asdict(self)
        raw["severity"] = self.severity.value
        raw["category"] = self.category.value
        return raw


class NotificationStore:
    """CRUD helpers over the ``notifications`` table."""

    def __init__(self, db_path: Path | str = Path("data/results.db"), *, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        if self.db_path.parent:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialise_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create(
        self,
        *,
        title: str,
        message: str,
        severity: Severity,
        category: NotificationCategory,
        target_user_id: str,
        related_result_id: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            id=new_identifier(),
            title=title,
            message=message,
            severity=severity,
            category=category,
            target_user_id=target_user_id,
            related_result_id=related_result_id,
            is_read=False,
            created_at=utcnow(),
        )
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO notifications (
                    id,
                    title,
                    message,
                    severity,
                    category,
                    target_user_id,
                    related_result_id,
                    is_read,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    notification.id,
                    notification.title,
                    notification.message,
                    notification.severity.value,
                    notification.category.value,
                    notification.target_user_id,
                    notification.related_result_id,
                    notification.created_at,
                    notification.created_at,
                ),
            )
        return notification

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                """
                UPDATE notifications SET is_read = 1, updated_at = ?
                WHERE id = ? AND target_user_id = ?
                """,
                (utcnow(), notification_id, user_id),
            )
        return cursor.rowcount > 0

    def mark_all_read(self, user_id: str) -> int:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                """
                UPDATE notifications SET is_read = 1, updated_at = ?
                WHERE target_user_id = ? AND is_read = 0
                """,
                (utcnow(), user_id),
            )
        return cursor.rowcount

    def delete(self, notification_id: str, user_id: str) -> bool:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "DELETE FROM notifications WHERE id = ? AND target_user_id = ?",
                (notification_id, user_id),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 50,
        unread_only: bool = False,
    ) -> List[Notification]:
        """Return the user's notifications, newest first."""

        query = "SELECT * FROM notifications WHERE target_user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        with closing(self._connect()) as conn:
            rows = conn.execute(query, (user_id, limit)).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def unread_count(self, user_id: str) -> int:
        with closing(self._connect()) as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE target_user_id = ? AND is_read = 0",
                (user_id,),
            ).fetchone()
        return int(count)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _initialise_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    category TEXT NOT NULL,
                    target_user_id TEXT NOT NULL,
                    related_result_id TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_notifications_user
                ON notifications (target_user_id, is_read)
                """
            )

    def _row_to_notification(self, row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            title=row["title"],
            message=row["message"],
            severity=Severity(row["severity"]),
            category=NotificationCategory(row["category"]),
            target_user_id=row["target_user_id"],
            related_result_id=row["related_result_id"],
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )
