import aiosqlite
import logging
import re
import time
from config import SLOW_QUERY_THRESHOLD_MS, STATS_RETENTION_DAYS, STATS_WINDOW_HOURS, TABLE_SCAN_ALERT_COUNT
from dataclasses import dataclass

logger = logging.getLogger(__name__)

INDEX_PATTERN = re.compile(r'USING (?:COVERING )?INDEX (\w+)')
SCAN_PATTERN = re.compile(r'^SCAN (?:TABLE )?(\w+)')

TABLE_SCAN = 'table_scan'
PRIMARY_KEY = 'primary_key'
UNKNOWN_INDEX = 'unknown'

# Row estimates; SQLite's plan output carries no row counts
ROWS_EXAMINED_SCAN = 1000
ROWS_EXAMINED_SEARCH = 10


@dataclass
class QueryTypeStats:
    count: int = 0
    total_time: float = 0.0
    min_time: float | None = None
    max_time: float = 0.0
    success_count: int = 0
    error_count: int = 0

    @property
    def avg_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0

    def add(self, execution_time_ms: float, success: bool):
        self.count += 1
        self.total_time += execution_time_ms
        self.min_time = execution_time_ms if self.min_time is None else min(self.min_time, execution_time_ms)
        self.max_time = max(self.max_time, execution_time_ms)
        if success:
            self.success_count += 1
        else:
            self.error_count += 1

    def to_dict(self) -> dict:
        return {
            'count': self.count,
            'avg_time': round(self.avg_time, 3),
            'min_time': round(self.min_time or 0.0, 3),
            'max_time': round(self.max_time, 3),
            'success_count': self.success_count,
            'error_count': self.error_count,
        }


def extract_index_usage(plan: list[str]) -> str:
    """Classify an EXPLAIN QUERY PLAN as a named index, primary key lookup, or table scan"""
    if not plan:
        return UNKNOWN_INDEX

    for detail in plan:
        match = INDEX_PATTERN.search(detail)
        if match:
            return match.group(1)
        if 'PRIMARY KEY' in detail:
            return PRIMARY_KEY
        if SCAN_PATTERN.match(detail) and 'CONSTANT ROW' not in detail:
            return TABLE_SCAN

    return UNKNOWN_INDEX


def estimate_rows_examined(plan: list[str]) -> int:
    if not plan:
        return 0
    for detail in plan:
        if detail.startswith('SCAN') and 'INDEX' not in detail and 'CONSTANT ROW' not in detail:
            return ROWS_EXAMINED_SCAN
        if detail.startswith('SEARCH'):
            return ROWS_EXAMINED_SEARCH
    return 1


def calculate_index_efficiency(index_stat: dict) -> int:
    """Score 0-100 from average time and rows examined; table scans score 0"""
    if index_stat['index_used'] == TABLE_SCAN:
        return 0
    time_score = max(0.0, 100 - (index_stat['avg_time'] or 0) / 10)
    rows_score = max(0.0, 100 - (index_stat['avg_rows_examined'] or 0) / 10)
    return round((time_score + rows_score) / 2)


class QueryPerformanceMonitor:
    """Times durable queries, records their plans, and reports index effectiveness"""

    def __init__(self, db: aiosqlite.Connection, slow_query_threshold_ms: float = SLOW_QUERY_THRESHOLD_MS):
        self.db = db
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.query_stats: dict[str, QueryTypeStats] = {}
        self.index_stats: dict[str, QueryTypeStats] = {}

    async def monitor_query(self, query_type: str, sql: str, params: tuple = (), fetch: str = 'all'):
        """Run a query, record timing and plan, and re-raise any failure after recording it.

        ``fetch`` is ``'all'`` (list of rows), ``'one'`` (row or None) or ``'none'``
        (rowcount).
        """
        start = time.perf_counter()
        try:
            async with self.db.execute(sql, params) as cursor:
                if fetch == 'all':
                    result = await cursor.fetchall()
                elif fetch == 'one':
                    result = await cursor.fetchone()
                else:
                    result = cursor.rowcount
        except aiosqlite.Error as e:
            execution_time_ms = (time.perf_counter() - start) * 1000
            await self.record(query_type, execution_time_ms, [], None, error=e)
            raise
        execution_time_ms = (time.perf_counter() - start) * 1000

        plan = await self.explain(sql, params)

        if fetch == 'all':
            rows_returned = len(result)
        elif fetch == 'one':
            rows_returned = 1 if result is not None else 0
        else:
            rows_returned = max(result, 0)

        await self.record(query_type, execution_time_ms, plan, rows_returned)

        if execution_time_ms > self.slow_query_threshold_ms:
            logger.warning(
                f"Slow query detected: {query_type} took {execution_time_ms:.2f}ms",
                extra={'sql': ' '.join(sql.split()), 'params': params, 'execution_plan': plan},
            )

        return result

    async def explain(self, sql: str, params: tuple = ()) -> list[str]:
        try:
            async with self.db.execute(f'EXPLAIN QUERY PLAN {sql}', params) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.debug(f"Failed to get execution plan: {e}")
            return []
        return [row[3] for row in rows]

    async def record(
        self,
        query_type: str,
        execution_time_ms: float,
        plan: list[str],
        rows_returned: int | None,
        error: Exception | None = None,
    ):
        index_used = extract_index_usage(plan)
        rows_examined = estimate_rows_examined(plan)
        success = error is None

        self.query_stats.setdefault(query_type, QueryTypeStats()).add(execution_time_ms, success)
        self.index_stats.setdefault(index_used, QueryTypeStats()).add(execution_time_ms, success)

        try:
            await self.db.execute(
                """
                INSERT INTO geolocation_query_stats
                    (query_type, execution_time_ms, rows_examined, rows_returned, index_used, success, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    query_type,
                    execution_time_ms,
                    rows_examined,
                    rows_returned or 0,
                    index_used,
                    1 if success else 0,
                    str(error) if error else None,
                ),
            )
        except aiosqlite.Error as e:
            logger.warning(f"Failed to record query stats for {query_type}: {e}")

    def get_in_memory_stats(self) -> dict:
        return {
            'query_types': {name: stats.to_dict() for name, stats in self.query_stats.items()},
            'index_usage': {name: stats.to_dict() for name, stats in self.index_stats.items()},
        }

    async def _fetch_dicts(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self.db.execute(sql, params) as cursor:
            columns = [column[0] for column in cursor.description]
            rows = await cursor.fetchall()
        return [dict(zip(columns, row)) for row in rows]

    async def get_performance_stats(self, window_hours: int = STATS_WINDOW_HOURS) -> dict:
        """Aggregate recorded telemetry over the recent window"""
        window = (f'-{window_hours} hours',)

        query_types = await self._fetch_dicts(
            """
            SELECT query_type, COUNT(*) AS count, AVG(execution_time_ms) AS avg_time,
                   MIN(execution_time_ms) AS min_time, MAX(execution_time_ms) AS max_time,
                   AVG(rows_examined) AS avg_rows_examined, AVG(rows_returned) AS avg_rows_returned,
                   SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) AS error_count
            FROM geolocation_query_stats
            WHERE timestamp > datetime('now', ?)
            GROUP BY query_type
            ORDER BY avg_time DESC
            """,
            window,
        )
        index_usage = await self._fetch_dicts(
            """
            SELECT index_used, COUNT(*) AS usage_count, AVG(execution_time_ms) AS avg_time,
                   AVG(rows_examined) AS avg_rows_examined
            FROM geolocation_query_stats
            WHERE timestamp > datetime('now', ?)
            GROUP BY index_used
            ORDER BY usage_count DESC
            """,
            window,
        )
        slow_queries = await self._fetch_dicts(
            """
            SELECT query_type, execution_time_ms, rows_examined, rows_returned, index_used, timestamp
            FROM geolocation_query_stats
            WHERE execution_time_ms > ? AND timestamp > datetime('now', ?)
            ORDER BY execution_time_ms DESC
            LIMIT 20
            """,
            (self.slow_query_threshold_ms, *window),
        )
        hourly = await self._fetch_dicts(
            """
            SELECT strftime('%Y-%m-%d %H:00', timestamp) AS hour, COUNT(*) AS query_count,
                   AVG(execution_time_ms) AS avg_time,
                   SUM(CASE WHEN index_used = 'table_scan' THEN 1 ELSE 0 END) AS table_scans
            FROM geolocation_query_stats
            WHERE timestamp > datetime('now', ?)
            GROUP BY hour
            ORDER BY hour DESC
            """,
            window,
        )

        return {
            'query_types': query_types,
            'index_usage': index_usage,
            'slow_queries': slow_queries,
            'hourly': hourly,
            'in_memory': self.get_in_memory_stats(),
        }

    async def analyze_index_effectiveness(self) -> dict:
        """Efficiency score per index plus recommendations for table scans and slow queries"""
        stats = await self.get_performance_stats()
        analysis = {'recommendations': [], 'index_efficiency': {}, 'query_optimizations': []}

        for index_stat in stats['index_usage']:
            name = index_stat['index_used']
            analysis['index_efficiency'][name] = calculate_index_efficiency(index_stat)

            if name == TABLE_SCAN and index_stat['usage_count'] > TABLE_SCAN_ALERT_COUNT:
                analysis['recommendations'].append(
                    {
                        'type': 'missing_index',
                        'message': f"High number of table scans detected ({index_stat['usage_count']}). "
                        "Consider adding appropriate indexes.",
                        'priority': 'high',
                    }
                )

            if index_stat['avg_time'] > self.slow_query_threshold_ms:
                analysis['recommendations'].append(
                    {
                        'type': 'slow_index',
                        'message': f"Index {name} has slow average query time ({index_stat['avg_time']:.2f}ms).",
                        'priority': 'medium',
                    }
                )

        for query_stat in stats['query_types']:
            if query_stat['avg_time'] > self.slow_query_threshold_ms:
                analysis['query_optimizations'].append(
                    {
                        'query_type': query_stat['query_type'],
                        'issue': 'slow_average_time',
                        'avg_time': query_stat['avg_time'],
                        'recommendation': 'Consider optimizing query or adding specific indexes',
                    }
                )

        return analysis

    async def run_index_maintenance(self):
        """Refresh planner statistics and rebuild indexes"""
        logger.info("Starting index maintenance")
        for statement in ('ANALYZE', 'REINDEX', 'PRAGMA optimize'):
            await self.db.execute(statement)
        logger.info("Index maintenance completed")

    async def clean_old_stats(self, days_to_keep: int = STATS_RETENTION_DAYS) -> int:
        """Delete telemetry older than the retention window"""
        async with self.db.execute(
            "DELETE FROM geolocation_query_stats WHERE timestamp < datetime('now', ?)", (f'-{days_to_keep} days',)
        ) as cursor:
            deleted = cursor.rowcount
        logger.info(f"Cleaned {deleted} query stats older than {days_to_keep} days")
        return deleted
