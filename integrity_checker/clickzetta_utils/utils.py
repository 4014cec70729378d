from __future__ import annotations

from typing import Any, Tuple


def normalize_identifier(value: Any) -> str:
    """
    Strips outer quotes, backticks or brackets and surrounding whitespace from an
    identifier. Returns an empty string when the identifier is missing.
    """

    if value is None:
        return ""
    text = str(value).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "`"}:
        return text[1:-1]
    if len(text) >= 2 and text[0] == "[" and text[-1] == "]":
        return text[1:-1].replace("]]", "]")
    return text


def quote_identifier(value: Any) -> str:
    """
    Wraps an identifier in backticks, escaping embedded backticks as needed.
    Returns an empty string if the identifier is missing.
    """

    normalized = normalize_identifier(value)
    if not normalized:
        return ""
    escaped = normalized.replace("`", "``")
    return f"`{escaped}`"


def quote_literal(value: Any) -> str:
    """Renders a value as a single-quoted SQL string literal."""
    text = "" if value is None else str(value)
    escaped = text.replace("\\", "\\\\").replace("'", "''")
    return f"'{escaped}'"


def split_table_identifier(identifier: str) -> Tuple[str, str, str]:
    """
    Splits a table identifier that may include workspace/schema prefixes.

    Supported formats:
      - workspace.schema.table
      - schema.table
      - table

    Missing segments come back as empty strings.
    """

    parts = [
        normalize_identifier(part)
        for part in str(identifier).split(".")
        if part.strip()
    ]
    if not parts:
        raise ValueError(f"Unable to parse table name from {identifier!r}")
    if len(parts) > 3:
        raise ValueError(
            "Expected an identifier in the form [{workspace}.][{schema}.]{table}; "
            f"received {identifier!r}"
        )
    padded = [""] * (3 - len(parts)) + parts
    return padded[0], padded[1], padded[2]

