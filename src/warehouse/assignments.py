"""Assignment store persisted in the DuckDB warehouse."""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import duckdb

from src.ab.store import DEFAULT_RETENTION, StoreUnavailableError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DuckDBAssignmentStore:
    """AssignmentStore over the `assignments` table.

    Writes are INSERT OR REPLACE (last write wins). Records older than the
    retention window are ignored on read and removed by purge_expired().
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._conn = conn
        self.retention = retention
        self._clock = clock

    def _cutoff(self) -> datetime:
        return self._clock() - self.retention

    def _run(self, query: str, params: list) -> list[tuple]:
        try:
            with self._conn.cursor() as cur:
                return cur.execute(query, params).fetchall()
        except duckdb.Error as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def get(self, visitor_id: str, experiment_id: str) -> str | None:
        rows = self._run(
            "SELECT variant_id FROM assignments "
            "WHERE visitor_id = ? AND experiment_id = ? AND assigned_at > ?",
            [visitor_id, experiment_id, self._cutoff()],
        )
        return rows[0][0] if rows else None

    def put(self, visitor_id: str, experiment_id: str, variant_id: str) -> None:
        self._run(
            "INSERT OR REPLACE INTO assignments VALUES (?, ?, ?, ?)",
            [visitor_id, experiment_id, variant_id, self._clock()],
        )

    def for_visitor(self, visitor_id: str) -> dict[str, str]:
        rows = self._run(
            "SELECT experiment_id, variant_id FROM assignments "
            "WHERE visitor_id = ? AND assigned_at > ?",
            [visitor_id, self._cutoff()],
        )
        return {exp_id: variant_id for exp_id, variant_id in rows}

    def delete_experiment(self, experiment_id: str) -> int:
        rows = self._run("DELETE FROM assignments WHERE experiment_id = ?", [experiment_id])
        return int(rows[0][0]) if rows else 0

    def purge_expired(self) -> int:
        rows = self._run("DELETE FROM assignments WHERE assigned_at <= ?", [self._cutoff()])
        return int(rows[0][0]) if rows else 0
