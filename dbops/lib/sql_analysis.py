"""Heuristic SQL analysis.

Extracts tables, equality filter columns, join columns and ordering columns
from SQL text with regular expressions. This is not a parser: multi-statement
or dialect-specific SQL may produce wrong or missing results, so everything
built on top of it (index suggestions, auto-index mining) is advisory.

Callers depend on the ``QueryAnalyzer`` interface, so a real parser can replace
``RegexQueryAnalyzer`` without touching them.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

_IDENT = r'[a-z_][a-z0-9_]*'

_KEYWORDS = frozenset({
    'select', 'from', 'where', 'join', 'inner', 'left', 'right', 'outer', 'cross', 'full',
    'natural', 'on', 'using', 'group', 'order', 'by', 'limit', 'offset', 'having', 'union',
    'except', 'intersect', 'set', 'values', 'as', 'and', 'or', 'not', 'null', 'is', 'in',
    'like', 'between', 'exists', 'case', 'when', 'then', 'else', 'end', 'returning', 'window',
    'default', 'distinct',
})

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_TABLE_REF = re.compile(rf'\b(?:from|join|update|into)\s+({_IDENT})(?:\s+(?:as\s+)?({_IDENT}))?')
_WHERE_CLAUSE = re.compile(
    r'\bwhere\b(.*?)(?=\bgroup\s+by\b|\border\s+by\b|\blimit\b|\bhaving\b|\bunion\b|$)'
)
_EQUALITY = re.compile(rf'(?<![\w.:@$])(?:({_IDENT})\.)?({_IDENT})\s*=(?!=)')
_JOIN = re.compile(
    rf'\bjoin\s+({_IDENT})(?:\s+(?:as\s+)?({_IDENT}))?\s+on\s+'
    rf'(?:({_IDENT})\.)?({_IDENT})\s*=\s*(?:({_IDENT})\.)?({_IDENT})'
)
_ORDER_BY = re.compile(r'\border\s+by\s+(.+?)(?=\blimit\b|\boffset\b|\)|$)')
_ORDER_TERM = re.compile(rf'^(?:({_IDENT})\.)?({_IDENT})(?:\s+(?:asc|desc))?(?:\s+nulls\s+(?:first|last))?$')
_SELECT_STAR = re.compile(r'\bselect\s+(?:distinct\s+)?\*')
_LIMIT = re.compile(r'\blimit\b')
_IN_SUBQUERY = re.compile(r'\bin\s*\(\s*select\b')
_HAS_WHERE = re.compile(r'\bwhere\b')


@dataclass(frozen=True)
class ColumnRef:
    """A column resolved to the table it belongs to."""

    table: str
    column: str

    def to_dict(self) -> Dict[str, str]:
        return {'table': self.table, 'column': self.column}


@dataclass(frozen=True)
class QueryPattern:
    """Access pattern extracted from one SQL statement.

    Attributes:
        query_type: Leading keyword, lower-cased (select, insert, update, ...)
        tables: Referenced tables in order of appearance
        aliases: Alias (and table name) to table name
        where_columns: Columns compared with ``=`` in the WHERE clause
        join_columns: Both sides of every ``JOIN ... ON a.x = b.y``
        order_by_columns: ORDER BY columns in order
        selects_all: Statement contains ``SELECT *``
        has_where: Statement has a WHERE clause
        has_limit: Statement has a LIMIT clause
        has_in_subquery: Statement contains ``IN (SELECT``
    """

    query_type: str
    tables: Tuple[str, ...] = ()
    aliases: Dict[str, str] = field(default_factory=dict, compare=False)
    where_columns: Tuple[ColumnRef, ...] = ()
    join_columns: Tuple[ColumnRef, ...] = ()
    order_by_columns: Tuple[ColumnRef, ...] = ()
    selects_all: bool = False
    has_where: bool = False
    has_limit: bool = False
    has_in_subquery: bool = False

    @property
    def main_table(self) -> Optional[str]:
        return self.tables[0] if self.tables else None

    def to_dict(self) -> Dict:
        """Serializable form persisted alongside query metrics."""
        return {
            'query_type': self.query_type,
            'tables': list(self.tables),
            'where_columns': [ref.to_dict() for ref in self.where_columns],
            'join_columns': [ref.to_dict() for ref in self.join_columns],
        }


def normalize_sql(sql: str) -> str:
    """Collapse whitespace, lower-case and drop a trailing semicolon."""
    return ' '.join(sql.split()).lower().rstrip(';').rstrip()


class QueryAnalyzer(ABC):
    """Extracts a QueryPattern from SQL text."""

    @abstractmethod
    def analyze(self, sql: str) -> QueryPattern:
        """Analyze one statement.

        Args:
            sql: Raw SQL text

        Returns:
            The extracted access pattern; never raises for unrecognized SQL
        """


class RegexQueryAnalyzer(QueryAnalyzer):
    """Pattern-matching analyzer over lower-cased SQL text."""

    def analyze(self, sql: str) -> QueryPattern:
        text = _STRING_LITERAL.sub('?', normalize_sql(sql))
        first_word = text.split(' ', 1)[0] if text else ''

        tables, aliases = self._table_references(text)
        has_joins = bool(_JOIN.search(text))
        default_table = tables[0] if len(tables) == 1 and not has_joins else None

        def resolve(qualifier: Optional[str], column: str) -> Optional[ColumnRef]:
            if qualifier:
                table = aliases.get(qualifier)
                return ColumnRef(table, column) if table else None
            if default_table and column not in _KEYWORDS:
                return ColumnRef(default_table, column)
            return None

        return QueryPattern(
            query_type=first_word,
            tables=tuple(tables),
            aliases=aliases,
            where_columns=tuple(self._where_columns(text, resolve)),
            join_columns=tuple(self._join_columns(text, aliases)),
            order_by_columns=tuple(self._order_by_columns(text, resolve)),
            selects_all=bool(_SELECT_STAR.search(text)),
            has_where=bool(_HAS_WHERE.search(text)),
            has_limit=bool(_LIMIT.search(text)),
            has_in_subquery=bool(_IN_SUBQUERY.search(text)),
        )

    def _table_references(self, text: str) -> Tuple[List[str], Dict[str, str]]:
        tables: List[str] = []
        aliases: Dict[str, str] = {}
        for table, alias in _TABLE_REF.findall(text):
            if table in _KEYWORDS:
                continue
            if table not in tables:
                tables.append(table)
            aliases[table] = table
            if alias and alias not in _KEYWORDS:
                aliases[alias] = table
        return tables, aliases

    def _where_columns(self, text: str, resolve) -> List[ColumnRef]:
        columns: List[ColumnRef] = []
        for clause in _WHERE_CLAUSE.findall(text):
            for qualifier, column in _EQUALITY.findall(clause):
                if not qualifier and column in _KEYWORDS:
                    continue
                ref = resolve(qualifier, column)
                if ref and ref not in columns:
                    columns.append(ref)
        return columns

    def _join_columns(self, text: str, aliases: Dict[str, str]) -> List[ColumnRef]:
        columns: List[ColumnRef] = []
        for joined, alias, left_q, left_col, right_q, right_col in _JOIN.findall(text):
            joined_alias = alias if alias and alias not in _KEYWORDS else joined
            for qualifier, column in ((left_q, left_col), (right_q, right_col)):
                # An unqualified ON column belongs to the table being joined
                table = aliases.get(qualifier) if qualifier else aliases.get(joined_alias, joined)
                if table:
                    ref = ColumnRef(table, column)
                    if ref not in columns:
                        columns.append(ref)
        return columns

    def _order_by_columns(self, text: str, resolve) -> List[ColumnRef]:
        match = _ORDER_BY.search(text)
        if not match:
            return []
        columns: List[ColumnRef] = []
        for term in match.group(1).split(','):
            term_match = _ORDER_TERM.match(term.strip())
            if not term_match:
                # Expressions cannot be served by a plain column index
                return []
            ref = resolve(term_match.group(1), term_match.group(2))
            if ref is None:
                return []
            columns.append(ref)
        return columns
