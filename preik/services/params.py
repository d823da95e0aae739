from typing import Optional


def safe_parse_int(value: Optional[str], default: int, maximum: int) -> int:
    """Positive integer query parameter, capped at `maximum`.

    Missing, non-numeric or < 1 values yield `default`.
    """
    try:
        parsed = int(str(value).strip()) if value is not None and str(value).strip() else default
    except ValueError:
        return default
    if parsed < 1:
        return default
    return min(parsed, maximum)


def escape_like(term: str) -> str:
    """Escape LIKE wildcards; use with `escape="\\\\"`."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
