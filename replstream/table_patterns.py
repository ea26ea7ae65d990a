"""
Table and event filtering.

Table patterns have the form ``schema.table`` and accept shell wildcards
or regular expressions in either part:

- ecommerce.users          # Single table
- ecommerce.*              # All tables in a schema
- ecommerce.user_*         # Wildcard match
- *.orders                 # Table in any schema
- ecommerce.user_[0-9]+    # Regex pattern
"""

import re
from typing import Iterable, List, Optional, Pattern
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)


@dataclass
class TablePattern:
    """
    One compiled ``schema.table`` pattern.

    Matching is case sensitive by default, as table names are on Linux.
    """

    schema: str
    table_pattern: str
    schema_regex: Pattern
    table_regex: Pattern

    @classmethod
    def parse(cls, pattern: str, case_sensitive: bool = True) -> 'TablePattern':
        """
        Compile a pattern string.

        Examples:
            >>> TablePattern.parse('ecommerce.*').matches('ecommerce', 'orders')
            True
            >>> TablePattern.parse('orders').schema
            '*'
        """
        if '.' in pattern:
            schema, table = pattern.split('.', 1)
        else:
            schema, table = '*', pattern

        flags = 0 if case_sensitive else re.IGNORECASE
        return cls(
            schema=schema,
            table_pattern=table,
            schema_regex=re.compile(f'^{_to_regex(schema)}$', flags),
            table_regex=re.compile(f'^{_to_regex(table)}$', flags),
        )

    def matches(self, schema: str, table: str) -> bool:
        return bool(self.schema_regex.match(schema) and self.table_regex.match(table))

    def __repr__(self):
        return f"TablePattern('{self.schema}.{self.table_pattern}')"


def _to_regex(part: str) -> str:
    # * -> .*, ? -> .
    return part.replace('*', '.*').replace('?', '.')


class TablePatternMatcher:
    """Matches ``(schema, table)`` pairs against any of several patterns."""

    def __init__(self, patterns: Iterable[str], case_sensitive: bool = True):
        self.patterns = [TablePattern.parse(p, case_sensitive) for p in patterns]

    def matches_table(self, schema: str, table: str) -> bool:
        return any(pattern.matches(schema, table) for pattern in self.patterns)

    def __bool__(self):
        return bool(self.patterns)


def validate_pattern(pattern: str) -> Optional[str]:
    """
    Check pattern syntax.

    Returns:
        Error message if invalid, None if valid

    Example:
        >>> validate_pattern('invalid..pattern')
        'Invalid pattern: multiple consecutive dots (should be schema.table)'
    """
    if not pattern:
        return "Invalid pattern: empty"
    if '..' in pattern:
        return "Invalid pattern: multiple consecutive dots (should be schema.table)"
    if pattern.count('.') > 1:
        return "Invalid pattern: too many dots (should be schema.table)"
    try:
        TablePattern.parse(pattern)
    except re.error as e:
        return f"Invalid regex pattern: {e}"
    return None


class EventFilter:
    """
    Decides which decoded events reach subscribers.

    Row events are kept only for tables passing the schema and table
    filters; every event kind must pass the event filters. Empty
    ``only_*`` lists mean "everything".

    Example:
        >>> event_filter = EventFilter(only_tables=['shop.orders'], ignored_events=['heartbeat'])
        >>> event_filter.allows_table('shop', 'orders')
        True
        >>> event_filter.allows_table('shop', 'users')
        False
    """

    def __init__(
        self,
        only_tables: Optional[List[str]] = None,
        ignored_tables: Optional[List[str]] = None,
        only_schemas: Optional[List[str]] = None,
        ignored_schemas: Optional[List[str]] = None,
        only_events: Optional[List[str]] = None,
        ignored_events: Optional[List[str]] = None,
    ):
        self.only_tables = TablePatternMatcher(only_tables or [])
        self.ignored_tables = TablePatternMatcher(ignored_tables or [])
        self.only_schemas = set(only_schemas or [])
        self.ignored_schemas = set(ignored_schemas or [])
        self.only_events = set(only_events or [])
        self.ignored_events = set(ignored_events or [])

    @classmethod
    def from_config(cls, config) -> 'EventFilter':
        return cls(
            only_tables=config.only_tables,
            ignored_tables=config.ignored_tables,
            only_schemas=config.only_schemas,
            ignored_schemas=config.ignored_schemas,
            only_events=config.only_events,
            ignored_events=config.ignored_events,
        )

    def allows_table(self, schema: str, table: str) -> bool:
        if self.only_schemas and schema not in self.only_schemas:
            return False
        if schema in self.ignored_schemas:
            return False
        if self.only_tables and not self.only_tables.matches_table(schema, table):
            return False
        return not self.ignored_tables.matches_table(schema, table)

    def allows_kind(self, kind_name: str) -> bool:
        if self.only_events and kind_name not in self.only_events:
            return False
        return kind_name not in self.ignored_events
