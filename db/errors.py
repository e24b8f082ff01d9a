"""Postgres error classification and remediation hints for srtd.

Lookup order:
    1. SQLSTATE code (exact, upper-cased)
    2. case-insensitive substring match on the message
    3. None

Import get_error_hint() from here. Do not duplicate these tables.
"""

from typing import Literal

ErrorType = Literal["connection", "pool_exhausted", "timeout", "syntax", "constraint", "transaction", "unknown"]

ERROR_HINTS: dict[str, str] = {
    "42703": "Column does not exist. Check spelling or ensure the migration that creates it has run.",
    "42P01": "Table or view does not exist. Ensure the migration that creates it has run first.",
    "42883": "Function does not exist. Check function name spelling and argument types.",
    "42601": "SQL syntax error. Check for typos, missing commas, or unbalanced parentheses.",
    "42501": "Insufficient privileges. Check database user permissions.",
    "42710": "Object already exists. The CREATE statement may need IF NOT EXISTS.",
    "42P07": "Table already exists. Use CREATE TABLE IF NOT EXISTS.",
    "23505": "Unique constraint violated. A row with this key already exists (duplicate).",
    "23503": "Foreign key violation. The referenced row does not exist or would be orphaned.",
    "23502": "NOT NULL violation. A required column is missing a value.",
    "23514": "Check constraint violated. The value does not meet the constraint condition.",
    "25P02": "Transaction aborted. A previous statement in this transaction failed.",
    "40001": "Serialization failure. Concurrent transaction conflict - retry may succeed.",
    "40P01": "Deadlock detected. Simplify transaction or retry.",
    "53300": "Too many connections. Close unused connections or increase max_connections.",
    "57014": "Query cancelled. Statement timeout or manual cancellation.",
    "08006": "Connection failure. Check database server is running and accessible.",
}

MESSAGE_HINTS: list[tuple[str, str]] = [
    (
        "permission denied",
        "Permission denied. Check database user has required privileges (SELECT, INSERT, etc.).",
    ),
    (
        "connection refused",
        "Connection refused. Verify database server is running and connection string is correct.",
    ),
    (
        "authentication failed",
        "Authentication failed. Check username and password in connection string.",
    ),
    ("does not exist", "Object does not exist. Ensure dependent migrations have run first."),
    ("already exists", "Object already exists. Consider using IF NOT EXISTS or OR REPLACE."),
    ("timeout", "Operation timed out. Query may be too slow or database is overloaded."),
]


def get_error_hint(code: str | None, message: str | None = None) -> str | None:
    """Return a remediation hint for a Postgres error, or None if nothing fits."""
    if code:
        hint = ERROR_HINTS.get(code.upper())
        if hint is not None:
            return hint

    if message:
        lowered = message.lower()
        for needle, hint in MESSAGE_HINTS:
            if needle in lowered:
                return hint

    return None


def classify_error_type(code: str | None, message: str | None = None) -> ErrorType:
    """Map a SQLSTATE (or, lacking one, the message) to a coarse error type."""
    lowered = (message or "").lower()
    if code:
        code = code.upper()
        if code.startswith("08") or code == "53300":
            return "connection"
        if code == "57014":
            return "timeout"
        if code.startswith("42"):
            return "syntax"
        if code.startswith("23"):
            return "constraint"
        if code.startswith(("25", "40")):
            return "transaction"

    if "pool" in lowered and ("exhausted" in lowered or "too many clients" in lowered):
        return "pool_exhausted"
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout"
    if "connection" in lowered or "connect" in lowered:
        return "connection"
    return "unknown"
