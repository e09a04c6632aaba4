"""SQL allow-list validator for TableStream MCP.

Queries must start with ``select`` and must not contain any denied keyword,
checked case-insensitively against the trimmed text. Keywords are matched as
plain substrings, so a column such as ``createdAt`` is rejected too. This is
advisory defense in depth: the store is read-only after load and is the real
boundary.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from .error_handler import QueryValidationError

logger = logging.getLogger(__name__)


INVALID_QUERY_MESSAGE = (
    "Invalid SQL query. Only SELECT statements are allowed. "
    "Dangerous keywords (DROP, DELETE, UPDATE, INSERT, etc.) are not permitted."
)


class QueryParser:
    """SELECT-only allow-list check with a keyword denylist."""

    DENIED_KEYWORDS = {
        'drop': 'Schema deletion operations are not allowed',
        'delete': 'Data deletion operations are not allowed',
        'update': 'Data modification operations are not allowed',
        'insert': 'Data insertion operations are not allowed',
        'alter': 'Schema modification operations are not allowed',
        'create': 'Schema creation operations are not allowed',
        'truncate': 'Table truncation operations are not allowed',
    }

    REQUIRED_PREFIX = 'select'

    def __init__(self):
        self.multi_statement_pattern = re.compile(r';\s*\S')

    def _normalize_query(self, query: str) -> str:
        if not isinstance(query, str):
            raise ValueError("Query must be a string")
        return query.strip().lower()

    def _detect_denied_keywords(self, query: str) -> List[str]:
        """Denied keywords found anywhere in the normalized query, in table order."""
        return [keyword for keyword in self.DENIED_KEYWORDS if keyword in query]

    def validate_query(self, query: str) -> Tuple[bool, Optional[str]]:
        """Validate SQL query against the allow-list.

        Args:
            query: SQL query string to validate

        Returns:
            Tuple of (is_valid, reason). If valid, reason is None.
        """
        try:
            normalized = self._normalize_query(query)
        except ValueError as e:
            return False, str(e)

        if not normalized:
            return False, "Empty query is not allowed"

        if not normalized.startswith(self.REQUIRED_PREFIX):
            return False, "Only SELECT queries are allowed"

        denied = self._detect_denied_keywords(normalized)
        if denied:
            return False, f"Query contains denied keywords: {', '.join(k.upper() for k in denied)}"

        if self.multi_statement_pattern.search(normalized):
            return False, "Multiple SQL statements in a single query are not allowed"

        return True, None

    def is_allowed(self, query: str) -> bool:
        """Boolean form of :meth:`validate_query`."""
        return self.validate_query(query)[0]

    def parse_and_validate(self, query: str) -> str:
        """Validate SQL query, raising QueryValidationError if it is rejected.

        Returns:
            The original query if validation passes
        """
        is_valid, reason = self.validate_query(query)

        if not is_valid:
            logger.warning(f"Blocked SQL query: {reason}")
            raise QueryValidationError(
                INVALID_QUERY_MESSAGE,
                query=query if isinstance(query, str) else None,
                metadata={'reason': reason}
            )

        logger.debug(f"SQL query validation passed: {query[:100]}{'...' if len(query) > 100 else ''}")
        return query

    def get_denied_keywords(self) -> Dict[str, str]:
        return self.DENIED_KEYWORDS.copy()


_query_parser = None


def get_query_parser() -> QueryParser:
    """Get the global QueryParser instance."""
    global _query_parser
    if _query_parser is None:
        _query_parser = QueryParser()
    return _query_parser


def validate(query: str) -> bool:
    """Return True when ``query`` passes the allow-list."""
    return get_query_parser().is_allowed(query)
