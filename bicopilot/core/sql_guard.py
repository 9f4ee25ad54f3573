"""Validation of generated SQL"""
from typing import List, Optional, Tuple

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError
from sqlglot.tokens import TokenType

from bicopilot.config import settings
from bicopilot.core.generation import extract_sql


# Matched against identifier tokens only, never inside string literals.
DANGEROUS_PROCEDURES = frozenset({"xp_cmdshell", "sp_executesql"})

FORBIDDEN_NODES = (exp.Insert, exp.Update, exp.Delete, exp.Drop, exp.Create, exp.Alter, exp.Command)


class SQLValidationError(Exception):
    """Raised when SQL validation fails"""
    pass


class SQLGuard:
    """Read-only policy check for generated SQL"""

    def __init__(self, *, dialect: str = "postgres", strict_tables: Optional[bool] = None):
        self.dialect = dialect
        self.max_limit = settings.sql_row_limit
        self.max_join_depth = settings.max_join_depth
        self.max_subquery_depth = settings.max_subquery_depth
        self.strict_tables = settings.strict_table_allowlist if strict_tables is None else strict_tables

    def validate(self, sql: str, allowed_tables: Optional[List[str]] = None) -> Tuple[str, List[str]]:
        """
        Validate SQL for safety and policy compliance.
        Returns: (sql with an enforced LIMIT, warnings)
        Raises: SQLValidationError if validation fails
        """
        warnings: List[str] = []
        sql = extract_sql(sql)
        if not sql:
            raise SQLValidationError("Empty SQL")

        self._check_tokens(sql)

        try:
            statements = [s for s in sqlglot.parse(sql, read=self.dialect) if s is not None]
        except (ParseError, TokenError) as e:
            raise SQLValidationError(f"Failed to parse SQL: {e}")
        if not statements:
            raise SQLValidationError("Empty SQL")
        if len(statements) > 1:
            raise SQLValidationError(f"Multiple statements are not allowed: {len(statements)}")
        parsed = statements[0]

        if not isinstance(parsed, (exp.Select, exp.Union)):
            raise SQLValidationError("Only SELECT statements are allowed")

        for node in parsed.walk():
            if isinstance(node, FORBIDDEN_NODES):
                raise SQLValidationError(f"Forbidden operation: {type(node).__name__}")

        joins = list(parsed.find_all(exp.Join))
        if len(joins) > self.max_join_depth:
            raise SQLValidationError(f"Too many joins: {len(joins)} (max: {self.max_join_depth})")

        self._check_subquery_depth(parsed)

        if allowed_tables:
            unknown = self._unknown_tables(parsed, allowed_tables)
            if unknown:
                message = f"Tables outside the selected schema: {', '.join(unknown)}"
                if self.strict_tables:
                    raise SQLValidationError(message)
                warnings.append(message)

        return self._ensure_limit(sql, parsed), warnings

    def _check_tokens(self, sql: str) -> None:
        try:
            tokens = sqlglot.tokenize(sql, read=self.dialect)
        except TokenError as e:
            raise SQLValidationError(f"Failed to parse SQL: {e}")
        for token in tokens:
            if token.comments:
                raise SQLValidationError("Comments are not allowed in generated SQL")
            if token.token_type in (TokenType.VAR, TokenType.IDENTIFIER) and token.text.lower() in DANGEROUS_PROCEDURES:
                raise SQLValidationError(f"Dangerous procedure detected: {token.text}")

    def _check_subquery_depth(self, parsed: exp.Expression, depth: int = 0):
        if depth > self.max_subquery_depth:
            raise SQLValidationError(
                f"Subquery depth exceeds limit: {depth} (max: {self.max_subquery_depth})"
            )
        for subquery in parsed.find_all(exp.Subquery):
            inner = subquery.this
            if isinstance(inner, exp.Expression) and inner is not parsed:
                self._check_subquery_depth(inner, depth + 1)

    @staticmethod
    def _unknown_tables(parsed: exp.Expression, allowed_tables: List[str]) -> List[str]:
        cte_names = {cte.alias_or_name.lower() for cte in parsed.find_all(exp.CTE)}
        allowed = set()
        for t in allowed_tables:
            name = str(t or "").strip().lower()
            if name:
                allowed.add(name)
                allowed.add(name.split(".")[-1])
        referenced = sorted({t.name.lower() for t in parsed.find_all(exp.Table) if t.name})
        return [t for t in referenced if t not in allowed and t not in cte_names]

    def _ensure_limit(self, sql: str, parsed: exp.Expression) -> str:
        """Append or cap the outermost LIMIT; subquery limits are left as written."""
        limit_node = parsed.args.get("limit")
        if limit_node is None:
            return f"{sql.rstrip(';').rstrip()} LIMIT {self.max_limit}"
        value = limit_node.expression
        if isinstance(value, exp.Literal) and value.is_int and int(value.this) > self.max_limit:
            return parsed.limit(self.max_limit).sql(dialect=self.dialect)
        return sql
