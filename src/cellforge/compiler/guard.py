"""Read-only statement guard.

anything we send to the warehouse on behalf of a user (model source queries
are user-editable) has to pass this check first. the rules are one compiled
table, evaluated in one place:

- the statement must start with an allowed read-only keyword
- no denied keyword may appear anywhere as a whole word

whole-word matching means a column called updated_at or a status value
'deleted' doesn't trip the UPDATE/DELETE rules. a bare DELETE still does,
even inside a string literal - false positives beat false negatives here.
"""

import re
from dataclasses import dataclass

from cellforge.errors import ValidationError

ALLOWED_STATEMENTS = ("SELECT", "WITH", "SHOW", "DESCRIBE", "DESC")

DENIED_KEYWORDS = (
    "CREATE",
    "DROP",
    "ALTER",
    "GRANT",
    "REVOKE",
    "MERGE",
    "DELETE",
    "UPDATE",
    "INSERT",
    "TRUNCATE",
    "CALL",
    r"EXECUTE\s+IMMEDIATE",
)


@dataclass(frozen=True)
class _Rule:
    name: str
    pattern: re.Pattern[str]


_LEADING = re.compile(r"^[\s(]*(" + "|".join(ALLOWED_STATEMENTS) + r")\b", re.IGNORECASE)
_DENY_RULES = tuple(
    _Rule(name=keyword, pattern=re.compile(rf"\b{keyword}\b", re.IGNORECASE))
    for keyword in DENIED_KEYWORDS
)


class StatementGuard:
    """Validates that a SQL statement is read-only."""

    def check(self, sql: str) -> str:
        """Return the statement unchanged, or raise ValidationError.

        the error carries the rule that fired in .pattern so the caller can
        show the user exactly what was rejected.
        """
        if not _LEADING.match(sql):
            raise ValidationError(
                f"SQL must start with one of: {', '.join(ALLOWED_STATEMENTS)}",
                pattern="^(" + "|".join(ALLOWED_STATEMENTS) + ")",
            )

        for rule in _DENY_RULES:
            if rule.pattern.search(sql):
                raise ValidationError(
                    f"SQL contains forbidden keyword: {rule.name}",
                    pattern=rule.pattern.pattern,
                )
        return sql

    def is_allowed(self, sql: str) -> bool:
        try:
            self.check(sql)
        except ValidationError:
            return False
        return True
