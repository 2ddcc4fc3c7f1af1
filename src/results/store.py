"""SQLite backed storage for result submissions.

:class:`ResultStore` owns the ``results`` table together with the
``duplicate_group_resolutions`` and ``audit_log`` tables that record group
decisions and status history. Readers open short-lived autocommit
connections and therefore never block writers. Writers go through
:meth:`ResultStore.transaction`, which opens a ``BEGIN IMMEDIATE``
transaction so that every read performed inside it observes the latest
committed state and the whole unit commits or rolls back together.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import NotFoundError
from .locks import KeyedLocks
from .models import (
    Category,
    Result,
    ResultStatus,
    Source,
    SubmissionChannel,
    tallies_for,
    utcnow,
)

__all__ = ["AuditEntry", "GroupResolution", "ResultStore"]

_RESULT_COLUMNS = (
    "id",
    "polling_center_id",
    "constituency",
    "category",
    "votes",
    "invalid_votes",
    "total_votes",
    "source",
    "submission_channel",
    "submitted_by",
    "comments",
    "status",
    "status_reason",
    "verified_by",
    "is_duplicate",
    "duplicate_group_id",
    "duplicate_reason",
    "related_result_ids",
    "created_at",
    "updated_at",
    "verified_at",
)


@dataclass(frozen=True, slots=True)
class GroupResolution:
    """Decision recorded when a duplicate group is resolved."""

    group_id: str
    approved_result_id: str
    resolved_by: str
    reason: str
    resolved_at: str

    def dict(self) -> Dict[str, str]:
        return {
            "group_id": self.group_id,
            "approved_result_id": self.approved_result_id,
            "resolved_by": self.resolved_by,
            "reason": self.reason,
            "resolved_at": self.resolved_at,
        }


@dataclass(frozen=True, slots=True)
class AuditEntry:
    result_id: str
    actor_id: str
    action: str
    old_status: Optional[str]
    new_status: Optional[str]
    summary: Optional[str]
    created_at: str


class ResultStore:
    """Persistent table of result submissions."""

    def __init__(self, db_path: Path | str = Path("data/results.db"), *, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.locks = KeyedLocks()
        if self.db_path.parent:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialise_db()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a write transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises.
        """

        with closing(self.connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    @contextmanager
    def _reader(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with closing(self.connect()) as own:
            yield own

    # ------------------------------------------------------------------
    # Writes (always inside a caller supplied transaction)
    # ------------------------------------------------------------------
    def insert(self, conn: sqlite3.Connection, result: Result) -> None:
        placeholders = ", ".join("?" for _ in _RESULT_COLUMNS)
        conn.execute(
            f"INSERT INTO results ({', '.join(_RESULT_COLUMNS)}) VALUES ({placeholders})",
            self._result_to_row(result),
        )

    def update(self, conn: sqlite3.Connection, result: Result) -> None:
        assignments = ", ".join(f"{column} = ?" for column in _RESULT_COLUMNS[1:])
        row = self._result_to_row(result)
        cursor = conn.execute(
            f"UPDATE results SET {assignments} WHERE id = ?",
            (*row[1:], row[0]),
        )
        if cursor.rowcount != 1:
            raise NotFoundError(f"Result {result.id} not found.", entity="result", result_id=result.id)

    def record_resolution(self, conn: sqlite3.Connection, resolution: GroupResolution) -> None:
        conn.execute(
            """
            INSERT INTO duplicate_group_resolutions (
                group_id,
                approved_result_id,
                resolved_by,
                reason,
                resolved_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                resolution.group_id,
                resolution.approved_result_id,
                resolution.resolved_by,
                resolution.reason,
                resolution.resolved_at,
            ),
        )

    def clear_resolution(self, conn: sqlite3.Connection, group_id: str) -> bool:
        cursor = conn.execute(
            "DELETE FROM duplicate_group_resolutions WHERE group_id = ?",
            (group_id,),
        )
        return cursor.rowcount > 0

    def append_audit(
        self,
        conn: sqlite3.Connection,
        *,
        result_id: str,
        actor_id: str,
        action: str,
        old_status: Optional[ResultStatus] = None,
        new_status: Optional[ResultStatus] = None,
        summary: Optional[str] = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO audit_log (
                result_id,
                actor_id,
                action,
                old_status,
                new_status,
                summary,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result_id,
                actor_id,
                action,
                old_status.value if old_status else None,
                new_status.value if new_status else None,
                summary,
                utcnow(),
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, result_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Optional[Result]:
        with self._reader(conn) as reader:
            row = reader.execute("SELECT * FROM results WHERE id = ?", (result_id,)).fetchone()
        return self._row_to_result(row) if row else None

    def require(self, result_id: str, *, conn: Optional[sqlite3.Connection] = None) -> Result:
        result = self.get(result_id, conn=conn)
        if result is None:
            raise NotFoundError(f"Result {result_id} not found.", entity="result", result_id=result_id)
        return result

    def find_siblings(
        self,
        conn: sqlite3.Connection,
        *,
        polling_center_id: str,
        category: Category,
        source: Source,
        exclude_id: Optional[str] = None,
    ) -> List[Result]:
        """Return results competing for the same center, category and source."""

        rows = conn.execute(
            """
            SELECT * FROM results
            WHERE polling_center_id = ? AND category = ? AND source = ? AND id IS NOT ?
            ORDER BY created_at, id
            """,
            (polling_center_id, category.value, source.value, exclude_id),
        ).fetchall()
        return [self._row_to_result(row) for row in rows]

    def fetch_group(self, group_id: str, *, conn: Optional[sqlite3.Connection] = None) -> List[Result]:
        """Return the members of a duplicate group in stable id order."""

        with self._reader(conn) as reader:
            rows = reader.execute(
                "SELECT * FROM results WHERE duplicate_group_id = ? ORDER BY id",
                (group_id,),
            ).fetchall()
        return [self._row_to_result(row) for row in rows]

    def list_duplicate_groups(self) -> Dict[str, List[Result]]:
        with closing(self.connect()) as conn:
            rows = conn.execute(
                """
                SELECT * FROM results
                WHERE duplicate_group_id IS NOT NULL
                ORDER BY duplicate_group_id, id
                """
            ).fetchall()
        groups: Dict[str, List[Result]] = {}
        for row in rows:
            groups.setdefault(row["duplicate_group_id"], []).append(self._row_to_result(row))
        return groups

    def get_resolution(
        self, group_id: str, *, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[GroupResolution]:
        with self._reader(conn) as reader:
            row = reader.execute(
                """
                SELECT group_id, approved_result_id, resolved_by, reason, resolved_at
                FROM duplicate_group_resolutions WHERE group_id = ?
                """,
                (group_id,),
            ).fetchone()
        if row is None:
            return None
        return GroupResolution(
            group_id=row["group_id"],
            approved_result_id=row["approved_result_id"],
            resolved_by=row["resolved_by"],
            reason=row["reason"],
            resolved_at=row["resolved_at"],
        )

    def resolved_group_ids(self) -> set[str]:
        with closing(self.connect()) as conn:
            rows = conn.execute("SELECT group_id FROM duplicate_group_resolutions").fetchall()
        return {row[0] for row in rows}

    def list_results(
        self,
        *,
        status: Optional[ResultStatus] = None,
        source: Optional[Source] = None,
        category: Optional[Category] = None,
        constituency: Optional[str] = None,
        exclude_statuses: Sequence[ResultStatus] = (),
        limit: Optional[int] = None,
    ) -> List[Result]:
        """Retrieve results filtered by the provided attributes, newest first."""

        query = "SELECT * FROM results WHERE 1 = 1"
        params: List[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if source is not None:
            query += " AND source = ?"
            params.append(source.value)
        if category is not None:
            query += " AND category = ?"
            params.append(category.value)
        if constituency is not None:
            query += " AND constituency = ?"
            params.append(constituency)
        if exclude_statuses:
            placeholders = ",".join("?" for _ in exclude_statuses)
            query += f" AND status NOT IN ({placeholders})"
            params.extend(item.value for item in exclude_statuses)
        query += " ORDER BY created_at DESC, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with closing(self.connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_result(row) for row in rows]

    def fetch_audit_trail(self, result_id: str) -> List[AuditEntry]:
        with closing(self.connect()) as conn:
            rows = conn.execute(
                """
                SELECT result_id, actor_id, action, old_status, new_status, summary, created_at
                FROM audit_log WHERE result_id = ? ORDER BY id
                """,
                (result_id,),
            ).fetchall()
        return [AuditEntry(*row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _initialise_db(self) -> None:
        with closing(self.connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS results (
                    id TEXT PRIMARY KEY,
                    polling_center_id TEXT NOT NULL,
                    constituency TEXT,
                    category TEXT NOT NULL,
                    votes TEXT NOT NULL,
                    invalid_votes INTEGER NOT NULL,
                    total_votes INTEGER NOT NULL,
                    source TEXT NOT NULL,
                    submission_channel TEXT NOT NULL,
                    submitted_by TEXT NOT NULL,
                    comments TEXT,
                    status TEXT NOT NULL,
                    status_reason TEXT,
                    verified_by TEXT,
                    is_duplicate INTEGER NOT NULL DEFAULT 0,
                    duplicate_group_id TEXT,
                    duplicate_reason TEXT,
                    related_result_ids TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    verified_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_results_siblings
                ON results (polling_center_id, category, source)
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_results_duplicate_group ON results (duplicate_group_id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS duplicate_group_resolutions (
                    group_id TEXT PRIMARY KEY,
                    approved_result_id TEXT NOT NULL,
                    resolved_by TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    resolved_at TEXT NOT NULL,
                    FOREIGN KEY (approved_result_id) REFERENCES results(id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    result_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    old_status TEXT,
                    new_status TEXT,
                    summary TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (result_id) REFERENCES results(id)
                )
                """
            )

    def _result_to_row(self, result: Result) -> tuple:
        return (
            result.id,
            result.polling_center_id,
            result.constituency,
            result.category.value,
            json.dumps(result.tallies.as_dict(), sort_keys=True),
            result.invalid_votes,
            result.total_votes,
            result.source.value,
            result.submission_channel.value,
            result.submitted_by,
            result.comments,
            result.status.value,
            result.status_reason,
            result.verified_by,
            int(result.is_duplicate),
            result.duplicate_group_id,
            result.duplicate_reason,
            json.dumps(sorted(result.related_result_ids)),
            result.created_at,
            result.updated_at,
            result.verified_at,
        )

    def _row_to_result(self, row: sqlite3.Row) -> Result:
        category = Category(row["category"])
        return Result(
            id=row["id"],
            polling_center_id=row["polling_center_id"],
            constituency=row["constituency"],
            category=category,
            tallies=tallies_for(category, json.loads(row["votes"] or "{}")),
            invalid_votes=row["invalid_votes"],
            total_votes=row["total_votes"],
            source=Source(row["source"]),
            submission_channel=SubmissionChannel(row["submission_channel"]),
            submitted_by=row["submitted_by"],
            comments=row["comments"],
            status=ResultStatus(row["status"]),
            status_reason=row["status_reason"],
            verified_by=row["verified_by"],
            is_duplicate=bool(row["is_duplicate"]),
            duplicate_group_id=row["duplicate_group_id"],
            duplicate_reason=row["duplicate_reason"],
            related_result_ids=tuple(json.loads(row["related_result_ids"] or "[]")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            verified_at=row["verified_at"],
        )
