# python -m pytest bicopilot/tests/core/test_sql_guard.py -v

import pytest

from bicopilot.config import settings
from bicopilot.core.sql_guard import SQLGuard, SQLValidationError


class TestSQLGuardSubqueryDepth:
    """Nested subquery depth limit"""

    def test_validate_allows_subquery_within_limit(self, monkeypatch):
        monkeypatch.setattr(settings, "max_subquery_depth", 1)
        guard = SQLGuard()

        sql = """
        SELECT *
        FROM (
            SELECT 1 AS value
        ) subquery
        """

        cleaned_sql, warnings = guard.validate(sql)

        assert warnings == []
        assert "SELECT" in cleaned_sql

    def test_validate_raises_when_subquery_depth_exceeded(self, monkeypatch):
        monkeypatch.setattr(settings, "max_subquery_depth", 1)
        guard = SQLGuard()

        sql = """
        SELECT *
        FROM (
            SELECT *
            FROM (
                SELECT 1 AS value
            ) inner_sq
        ) outer_sq
        """

        with pytest.raises(SQLValidationError) as excinfo:
            guard.validate(sql)

        assert "Subquery depth exceeds limit" in str(excinfo.value)


class TestSQLGuardPolicy:
    @pytest.mark.parametrize(
        "sql",
        [
            "DELETE FROM common.tbl_Daily_actions",
            "UPDATE common.tbl_Daily_actions SET deposits = 0",
            "SELECT 1; DROP TABLE common.tbl_Daily_actions",
            "SELECT 1 -- trailing comment",
            "SELECT 1 /* hidden */ FROM common.tbl_Daily_actions",
            "SELECT xp_cmdshell('dir')",
            "",
        ],
    )
    def test_rejects_non_read_only_sql(self, sql):
        with pytest.raises(SQLValidationError):
            SQLGuard().validate(sql)

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT player_id FROM common.tbl_Daily_actions WHERE note = 'a; b' LIMIT 10",
            "SELECT player_id FROM common.tbl_Daily_actions WHERE note = '--promo' LIMIT 10",
            "SELECT player_id FROM common.tbl_Daily_actions WHERE note = 'xp_cmdshell /* x */' LIMIT 10",
        ],
    )
    def test_markers_inside_string_literals_are_allowed(self, sql):
        cleaned, _ = SQLGuard().validate(sql)

        assert cleaned == sql

    def test_missing_limit_is_appended(self, monkeypatch):
        monkeypatch.setattr(settings, "sql_row_limit", 500)

        sql, _ = SQLGuard().validate("SELECT player_id FROM common.tbl_Daily_actions;")

        assert sql == "SELECT player_id FROM common.tbl_Daily_actions LIMIT 500"

    def test_oversized_limit_is_capped(self, monkeypatch):
        monkeypatch.setattr(settings, "sql_row_limit", 500)

        sql, _ = SQLGuard().validate("SELECT player_id FROM common.tbl_Daily_actions LIMIT 5000")

        assert sql.endswith("LIMIT 500")

    def test_only_the_outer_limit_is_capped(self, monkeypatch):
        monkeypatch.setattr(settings, "sql_row_limit", 500)
        sql = (
            "SELECT s.player_id FROM (SELECT player_id FROM common.tbl_Daily_actions LIMIT 5000) s "
            "LIMIT 5000"
        )

        cleaned, _ = SQLGuard().validate(sql)

        assert "LIMIT 5000)" in cleaned
        assert cleaned.endswith("LIMIT 500")

    def test_subquery_limit_does_not_count_as_outer_limit(self, monkeypatch):
        monkeypatch.setattr(settings, "sql_row_limit", 500)
        sql = "SELECT s.player_id FROM (SELECT player_id FROM common.tbl_Daily_actions LIMIT 20) s"

        cleaned, _ = SQLGuard().validate(sql)

        assert cleaned == sql + " LIMIT 500"

    def test_small_limit_is_kept(self):
        sql, _ = SQLGuard().validate("SELECT player_id FROM common.tbl_Daily_actions LIMIT 10")

        assert sql.endswith("LIMIT 10")

    def test_markdown_fence_is_stripped(self):
        sql, _ = SQLGuard().validate("```sql\nSELECT player_id FROM common.tbl_Daily_actions LIMIT 10\n```")

        assert sql == "SELECT player_id FROM common.tbl_Daily_actions LIMIT 10"

    def test_too_many_joins(self, monkeypatch):
        monkeypatch.setattr(settings, "max_join_depth", 1)
        sql = (
            "SELECT a.player_id FROM common.tbl_Daily_actions a "
            "JOIN common.tbl_Daily_actions_players p ON p.player_id = a.player_id "
            "JOIN common.tbl_Countries c ON c.country_id = p.country_id"
        )

        with pytest.raises(SQLValidationError) as excinfo:
            SQLGuard().validate(sql)

        assert "Too many joins" in str(excinfo.value)


class TestSQLGuardTables:
    SQL = (
        "SELECT c.country_name FROM common.tbl_Daily_actions a "
        "JOIN common.tbl_Countries c ON c.country_id = a.country_id LIMIT 10"
    )

    def test_unknown_table_is_a_warning_by_default(self):
        _, warnings = SQLGuard(strict_tables=False).validate(self.SQL, ["common.tbl_Daily_actions"])

        assert len(warnings) == 1
        assert "tbl_countries" in warnings[0]

    def test_unknown_table_is_rejected_when_strict(self):
        with pytest.raises(SQLValidationError):
            SQLGuard(strict_tables=True).validate(self.SQL, ["common.tbl_Daily_actions"])

    def test_cte_names_are_not_tables(self):
        sql = (
            "WITH vip AS (SELECT player_id FROM common.tbl_Daily_actions_players) "
            "SELECT vip.player_id FROM vip LIMIT 10"
        )

        _, warnings = SQLGuard(strict_tables=True).validate(sql, ["common.tbl_Daily_actions_players"])

        assert warnings == []
