"""DuckDB-backed analytics warehouse.

Events are stored once; their experiment attribution goes into a side
table (one row per event per experiment) so per-variant aggregation is a
plain join. All queries are parameterized.
"""

import json
import logging
from datetime import datetime
from pathlib import Path

import duckdb

from src.analysis.service import AggregationQueryError, GoalCountRow, VariantCountRow
from src.collector.schemas import EventType

logger = logging.getLogger(__name__)

GOAL_EVENT_TYPE = EventType.EXPERIMENT_GOAL.value

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS events (
        event_id VARCHAR PRIMARY KEY,
        user_id VARCHAR NOT NULL,
        event_type VARCHAR NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL,
        properties JSON
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_experiments (
        event_id VARCHAR NOT NULL,
        experiment_id VARCHAR NOT NULL,
        variant_id VARCHAR NOT NULL,
        PRIMARY KEY (event_id, experiment_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assignments (
        visitor_id VARCHAR NOT NULL,
        experiment_id VARCHAR NOT NULL,
        variant_id VARCHAR NOT NULL,
        assigned_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (visitor_id, experiment_id)
    )
    """,
]


def get_connection(path: str = ":memory:") -> duckdb.DuckDBPyConnection:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(path)


def init_db(conn: duckdb.DuckDBPyConnection) -> None:
    for statement in SCHEMA:
        conn.execute(statement)


def _count(conn: duckdb.DuckDBPyConnection, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def insert_events(conn: duckdb.DuckDBPyConnection, events: list[dict]) -> tuple[int, int]:
    """Insert serialized events, skipping ids already present.

    Returns (inserted, duplicates).
    """
    if not events:
        return 0, 0

    event_rows = []
    attribution_rows = []
    seen = set()
    for e in events:
        if e["event_id"] in seen:
            continue
        seen.add(e["event_id"])
        timestamp = e["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        event_rows.append((
            e["event_id"],
            e["user_id"],
            e["event_type"],
            timestamp,
            json.dumps(e.get("properties") or {}),
        ))
        for exp_id, variant_id in (e.get("experiments") or {}).items():
            attribution_rows.append((e["event_id"], exp_id, variant_id))

    before = _count(conn, "events")
    conn.execute("BEGIN TRANSACTION")
    try:
        conn.executemany(
            "INSERT OR IGNORE INTO events VALUES (?, ?, ?, ?, ?)", event_rows,
        )
        if attribution_rows:
            conn.executemany(
                "INSERT OR IGNORE INTO event_experiments VALUES (?, ?, ?)",
                attribution_rows,
            )
        conn.execute("COMMIT")
    except duckdb.Error:
        conn.execute("ROLLBACK")
        raise

    inserted = _count(conn, "events") - before
    logger.debug(
        "Inserted %d events (%d attributions), skipped %d duplicates",
        inserted, len(attribution_rows), len(events) - inserted,
    )
    return inserted, len(events) - inserted


def _date_filter(start: datetime | None, end: datetime | None) -> tuple[str, list]:
    clause, params = "", []
    if start is not None:
        clause += " AND e.timestamp >= ?"
        params.append(start)
    if end is not None:
        clause += " AND e.timestamp <= ?"
        params.append(end)
    return clause, params


_ATTRIBUTED = """
    SELECT
        e.user_id,
        x.variant_id,
        e.event_type,
        json_extract_string(e.properties, '$.event_name') AS event_name,
        json_extract_string(e.properties, '$.goal_id') AS goal_id,
        COALESCE(
            TRY_CAST(json_extract_string(e.properties, '$.amount') AS DOUBLE),
            TRY_CAST(json_extract_string(e.properties, '$.revenue') AS DOUBLE)
        ) AS revenue
    FROM events e
    JOIN event_experiments x ON x.event_id = e.event_id
    WHERE x.experiment_id = ?{date_filter}
"""


class DuckDBResultsSource:
    """Aggregation queries consumed by the analysis service."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self._conn = conn

    def fetch_variant_counts(
        self,
        experiment_id: str,
        goal_event: str,
        start: datetime | None = None,
        end: datetime | None = None,
        goal_id: str | None = None,
    ) -> list[VariantCountRow]:
        """One row per variant: distinct attributed visitors and, of those, converters.

        A goal matches the event type, properties.event_name, or an
        experiment_goal event carrying properties.goal_id (the goal event
        itself when no goal id is given).
        """
        if goal_id is None:
            goal_id = goal_event
        date_filter, date_params = _date_filter(start, end)
        query = f"""
            WITH attributed AS ({_ATTRIBUTED.format(date_filter=date_filter)})
            SELECT
                variant_id,
                COUNT(DISTINCT user_id) AS users,
                COUNT(DISTINCT CASE
                    WHEN event_type = ? OR event_name = ?
                        OR (event_type = ? AND goal_id = ?) THEN user_id
                END) AS conversions
            FROM attributed
            GROUP BY variant_id
            ORDER BY variant_id
        """
        params = [
            experiment_id, *date_params, goal_event, goal_event, GOAL_EVENT_TYPE, goal_id,
        ]
        rows = self._run(query, params)
        return [VariantCountRow(variant_id=r[0], users=int(r[1]), conversions=int(r[2])) for r in rows]

    def fetch_goal_counts(
        self,
        experiment_id: str,
        goals: list[tuple[str, str]],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[GoalCountRow]:
        if not goals:
            return []
        date_filter, date_params = _date_filter(start, end)
        query = f"""
            WITH attributed AS ({_ATTRIBUTED.format(date_filter=date_filter)}),
            goals AS (
                SELECT unnest(?::VARCHAR[]) AS goal_id, unnest(?::VARCHAR[]) AS goal_event
            )
            SELECT
                a.variant_id,
                g.goal_id,
                COUNT(DISTINCT a.user_id) AS conversions,
                SUM(a.revenue) AS total_revenue
            FROM attributed a
            JOIN goals g
                ON a.event_type = g.goal_event
                OR a.event_name = g.goal_event
                OR (a.event_type = ? AND a.goal_id = g.goal_id)
            GROUP BY a.variant_id, g.goal_id
            ORDER BY a.variant_id, g.goal_id
        """
        params = [
            experiment_id, *date_params,
            [goal_id for goal_id, _ in goals], [event for _, event in goals],
            GOAL_EVENT_TYPE,
        ]
        rows = self._run(query, params)
        return [
            GoalCountRow(
                variant_id=r[0],
                goal_id=r[1],
                conversions=int(r[2]),
                total_revenue=float(r[3]) if r[3] is not None else None,
            )
            for r in rows
        ]

    def _run(self, query: str, params: list) -> list[tuple]:
        try:
            with self._conn.cursor() as cur:
                return cur.execute(query, params).fetchall()
        except duckdb.Error as exc:
            raise AggregationQueryError(str(exc)) from exc
