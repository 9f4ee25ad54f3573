"""SQL execution with safety and timeout"""
import asyncio
import time
from typing import Any, Dict, List, Optional

import asyncpg

from bicopilot.config import settings


class SQLExecutionError(Exception):
    """Raised when SQL execution fails"""
    pass


async def open_target_connection() -> asyncpg.Connection:
    """Connect to the target PostgreSQL warehouse with the configured search_path."""
    # SSL mode: 'disable' -> ssl=False, other values passed as ssl parameter
    ssl_mode = settings.target_db_ssl if settings.target_db_ssl != "disable" else False
    conn = await asyncpg.connect(
        host=settings.target_db_host,
        port=settings.target_db_port,
        database=settings.target_db_name,
        user=settings.target_db_user,
        password=settings.target_db_password,
        ssl=ssl_mode,
    )
    schemas = (settings.target_db_schemas or "").split(",")
    schemas_str = ", ".join(s.strip() for s in schemas if s.strip())
    if schemas_str:
        await conn.execute(f"SET search_path TO {schemas_str}")
    return conn


class SQLExecutor:
    """Execute validated SELECT statements with a timeout and a row cap"""

    def __init__(self, *, timeout: Optional[float] = None, max_rows: Optional[int] = None):
        self.timeout = float(settings.sql_timeout_seconds if timeout is None else timeout)
        self.max_rows = int(settings.sql_max_rows if max_rows is None else max_rows)

    async def execute_query(
        self,
        conn: asyncpg.Connection,
        sql: str,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Execute SQL query and return results with metadata.

        Returns:
            {
                "columns": List[str],
                "rows": List[List[Any]],
                "row_count": int,
                "execution_time_ms": float
            }
        """
        start_time = time.time()
        effective_timeout = timeout if timeout is not None else self.timeout

        try:
            rows = await asyncio.wait_for(conn.fetch(sql), timeout=effective_timeout)
        except asyncio.TimeoutError:
            raise SQLExecutionError(f"Query execution timeout after {effective_timeout} seconds")
        except asyncpg.PostgresError as e:
            raise SQLExecutionError(f"Database error: {str(e)}")

        if len(rows) > self.max_rows:
            raise SQLExecutionError(f"Query returned too many rows: {len(rows)} (max: {self.max_rows})")

        columns = list(rows[0].keys()) if rows else []
        data = [list(row.values()) for row in rows]
        return self.format_results_for_json({
            "columns": columns,
            "rows": data,
            "row_count": len(rows),
            "execution_time_ms": round((time.time() - start_time) * 1000, 2),
        })

    async def run(self, sql: str) -> Dict[str, Any]:
        """Open a target connection, execute, close."""
        try:
            conn = await open_target_connection()
        except (OSError, asyncpg.PostgresError) as e:
            raise SQLExecutionError(f"Target database unavailable: {str(e)}")
        try:
            return await self.execute_query(conn, sql)
        finally:
            await conn.close()

    @staticmethod
    def format_results_for_json(results: Dict[str, Any]) -> Dict[str, Any]:
        """Format results for JSON serialization"""
        formatted_rows: List[List[Any]] = []
        for row in results["rows"]:
            formatted_row = []
            for value in row:
                if value is None or isinstance(value, (str, int, float, bool)):
                    formatted_row.append(value)
                else:
                    # Convert other types (Decimal, date, ...) to string
                    formatted_row.append(str(value))
            formatted_rows.append(formatted_row)
        return {**results, "rows": formatted_rows}
