"""Input validation utilities.

Provides validation for:
- PostgreSQL identifiers (database names)
- Local dump file paths typed or pasted by the user

All validators return the validated value or raise ValidationError.
"""

import re
from pathlib import Path

from dbrestore.core.exceptions import ValidationError


# Names that would shadow built-in databases or read as SQL keywords
RESERVED_DATABASE_NAMES: frozenset[str] = frozenset({
    "postgres", "template0", "template1",
    "all", "and", "as", "create", "database", "default", "drop", "from",
    "grant", "group", "index", "not", "null", "or", "public", "role",
    "schema", "select", "table", "user", "where",
})

# PostgreSQL identifier pattern
IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# Maximum identifier length
MAX_IDENTIFIER_LENGTH = 63


def validate_database_name(value: str) -> str:
    """Validate a target database name.

    Rules:
    - Must start with letter or underscore
    - Can contain letters, digits, underscores
    - Cannot be a built-in database or reserved word
    - Max 63 characters

    Args:
        value: The name to validate

    Returns:
        The validated name

    Raises:
        ValidationError: If validation fails
    """
    value = value.strip()
    if not value:
        raise ValidationError(
            "Database name cannot be empty",
            hint="Provide a valid name",
        )

    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"Database name exceeds maximum length ({len(value)} > {MAX_IDENTIFIER_LENGTH})",
            hint=f"Use a name with {MAX_IDENTIFIER_LENGTH} or fewer characters",
            details=[f"Suggestion: {sanitize_database_name(value)}"],
        )

    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"Invalid database name: '{value}'",
            hint="Must start with a letter or underscore, contain only letters, digits, and underscores",
            details=[f"Suggestion: {sanitize_database_name(value)}"],
        )

    if value.lower() in RESERVED_DATABASE_NAMES:
        raise ValidationError(
            f"'{value}' is reserved and cannot be used as a restore target",
            hint=f"Try '{value}_restored' instead",
        )

    return value


def sanitize_database_name(value: str) -> str:
    """Turn an arbitrary string into a valid lowercase database name."""
    cleaned = re.sub(r"[^a-z0-9_]", "_", value.strip().lower())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")

    if not cleaned:
        cleaned = "restored_db"

    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"

    if cleaned.lower() in RESERVED_DATABASE_NAMES:
        cleaned = f"{cleaned}_restored"

    return cleaned[:MAX_IDENTIFIER_LENGTH].rstrip("_") or "restored_db"


def validate_local_path(value: str) -> Path:
    """Validate a local dump file path.

    Strips surrounding quotes left by drag-and-drop into a terminal,
    expands ``~`` and resolves the path.

    Args:
        value: Raw path as entered by the user

    Returns:
        Resolved path to an existing, non-empty file

    Raises:
        ValidationError: If the path is empty, missing, a directory or empty file
    """
    raw = value.strip().strip("'\"").strip()
    if not raw:
        raise ValidationError(
            "File path cannot be empty",
            hint="Enter the path to a .sql, .dump, .tar.gz or .gz backup",
        )

    path = Path(raw).expanduser().resolve()

    if not path.exists():
        raise ValidationError(
            f"File not found: {path}",
            hint="Check the path and try again",
        )

    if not path.is_file():
        raise ValidationError(
            f"Not a file: {path}",
            hint="Point to the dump file itself, not its directory",
        )

    if path.stat().st_size == 0:
        raise ValidationError(f"File is empty: {path}")

    return path
