"""SQLite-backed report queue.

This module provides the Persistence class that stores aggregate reports
awaiting delivery together with their error trail. It is the queue the
delivery engine reads from and writes deletions and errors to:

- ``retrieve_todo()`` returns the queued reports, oldest first
- ``delete_report(id)`` removes a report and its error trail
- ``record_error(id, message)`` appends to the trail and returns the new total

The persistence layer uses aiosqlite for async SQLite operations against a
file-based database.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/var/lib/dmarc-sender/reports.db")
        await persistence.init_db()

        await persistence.insert_report(report)
        for report in await persistence.retrieve_todo():
            ...
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .models import AggregateReport, PublishedPolicy


class Persistence:
    """Async SQLite persistence layer for the aggregate report queue.

    Each operation opens and closes its own connection, so the instance
    holds no open handles between calls.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "dmarc_reports.db"):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file. An empty value
                falls back to ``dmarc_reports.db``.
        """
        self.db_path = db_path or "dmarc_reports.db"

    async def init_db(self) -> None:
        """Create the ``reports`` and ``report_errors`` tables if missing."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    domain TEXT NOT NULL,
                    policy_published TEXT NOT NULL,
                    xml TEXT NOT NULL,
                    begin_ts INTEGER NOT NULL DEFAULT 0,
                    end_ts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS report_errors (
                    report_id TEXT NOT NULL,
                    error TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (report_id) REFERENCES reports(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_report_errors_report ON report_errors(report_id)"
            )
            await db.commit()

    # Reports ------------------------------------------------------------------
    @staticmethod
    def _decode_report_row(row: Tuple[Any, ...], columns: Sequence[str], errors: List[str]) -> AggregateReport:
        data = dict(zip(columns, row))
        try:
            policy = json.loads(data["policy_published"] or "{}")
        except json.JSONDecodeError:
            policy = {}
        return AggregateReport(
            report_id=data["id"],
            domain=data["domain"],
            policy_published=PublishedPolicy(**policy),
            xml=data["xml"],
            begin=int(data["begin_ts"] or 0),
            end=int(data["end_ts"] or 0),
            error_count=len(errors),
            errors=errors,
        )

    async def _errors_by_report(self, db: aiosqlite.Connection, ids: Sequence[str]) -> Dict[str, List[str]]:
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        trail: Dict[str, List[str]] = {rid: [] for rid in ids}
        async with db.execute(
            f"""
            SELECT report_id, error FROM report_errors
            WHERE report_id IN ({placeholders})
            ORDER BY rowid ASC
            """,
            list(ids),
        ) as cur:
            for report_id, error in await cur.fetchall():
                trail.setdefault(report_id, []).append(error)
        return trail

    async def insert_report(self, report: AggregateReport) -> bool:
        """Queue a report. Returns False if a report with the same id exists."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO reports (id, domain, policy_published, xml, begin_ts, end_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    report.report_id,
                    report.domain,
                    report.policy_published.model_dump_json(exclude_none=True),
                    report.xml,
                    report.begin,
                    report.end,
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def retrieve_todo(self, limit: Optional[int] = None) -> List[AggregateReport]:
        """Return every queued report with its error trail, oldest first."""
        query = """
            SELECT id, domain, policy_published, xml, begin_ts, end_ts
            FROM reports
            ORDER BY created_at ASC, rowid ASC
        """
        params: Tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
            trail = await self._errors_by_report(db, [row[0] for row in rows])
        return [self._decode_report_row(row, cols, trail.get(row[0], [])) for row in rows]

    async def get_report(self, report_id: str) -> Optional[AggregateReport]:
        """Fetch a single report, or None if it is not queued."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, domain, policy_published, xml, begin_ts, end_ts
                FROM reports WHERE id=?
                """,
                (report_id,),
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
            if not row:
                return None
            trail = await self._errors_by_report(db, [report_id])
        return self._decode_report_row(row, cols, trail.get(report_id, []))

    async def delete_report(self, report_id: str) -> bool:
        """Remove a report and its error trail. Safe to call repeatedly."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM report_errors WHERE report_id=?", (report_id,))
            cursor = await db.execute("DELETE FROM reports WHERE id=?", (report_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def record_error(self, report_id: str, message: str) -> int:
        """Append an error to the report's trail and return the new total."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO report_errors (report_id, error) VALUES (?, ?)",
                (report_id, message),
            )
            await db.commit()
            async with db.execute(
                "SELECT COUNT(*) FROM report_errors WHERE report_id=?",
                (report_id,),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def list_reports(self) -> List[Dict[str, Any]]:
        """Return a summary of queued reports for inspection purposes."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT r.id, r.domain, r.policy_published, r.begin_ts, r.end_ts,
                       LENGTH(r.xml) AS xml_bytes, r.created_at,
                       (SELECT COUNT(*) FROM report_errors e WHERE e.report_id = r.id) AS error_count
                FROM reports r
                ORDER BY r.created_at ASC, r.rowid ASC
                """
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        result: List[Dict[str, Any]] = []
        for row in rows:
            data = dict(zip(cols, row))
            try:
                data["rua"] = json.loads(data.pop("policy_published") or "{}").get("rua")
            except json.JSONDecodeError:
                data["rua"] = None
            result.append(data)
        return result

    async def count_reports(self) -> int:
        """Return the number of reports still queued."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM reports") as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)
