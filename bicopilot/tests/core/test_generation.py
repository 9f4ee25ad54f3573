# python -m pytest bicopilot/tests/core/test_generation.py -v

"""extract_sql cleanup, the default single-chunk stream, and executor result formatting."""

from datetime import date
from decimal import Decimal

import pytest

from bicopilot.core.generation import GenerationBackend, extract_sql
from bicopilot.core.sql_exec import SQLExecutor


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("```sql\nSELECT 1\n```", "SELECT 1"),
        ("```\nSELECT 1", "SELECT 1"),
        ("sql SELECT 1;", "SELECT 1"),
        ("  SELECT 1 ;  ", "SELECT 1"),
        ("", ""),
    ],
)
def test_extract_sql(raw, expected):
    assert extract_sql(raw) == expected


@pytest.mark.asyncio
async def test_default_stream_yields_full_completion_once():
    class OneShot(GenerationBackend):
        async def generate(self, prompt):
            return "SELECT 1"

    chunks = [c async for c in OneShot().generate_stream("prompt")]

    assert chunks == ["SELECT 1"]


def test_executor_formats_non_json_values_as_strings():
    formatted = SQLExecutor.format_results_for_json({
        "columns": ["player_id", "deposits", "action_date", "note"],
        "rows": [[7, Decimal("12.50"), date(2024, 3, 14), None]],
        "row_count": 1,
        "execution_time_ms": 1.0,
    })

    assert formatted["rows"] == [[7, "12.50", "2024-03-14", None]]
    assert formatted["row_count"] == 1
