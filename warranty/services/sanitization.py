from __future__ import annotations

from typing import Optional

import bleach

from warranty.errors import InvalidArgumentError


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """Strip markup from free text supplied by customers or staff."""
    if value is None:
        return None
    cleaned = bleach.clean(str(value), tags=[], strip=True).strip()
    return cleaned or None


def require_text(
    field: str,
    value: Optional[str],
    *,
    min_length: int = 1,
    max_length: Optional[int] = None,
) -> str:
    cleaned = sanitize_text(value)
    if cleaned is None or len(cleaned) < min_length:
        raise InvalidArgumentError.for_field(
            field, f"{field} must be at least {min_length} characters", value
        )
    if max_length is not None and len(cleaned) > max_length:
        raise InvalidArgumentError.for_field(
            field, f"{field} must be at most {max_length} characters", value
        )
    return cleaned


def optional_text(field: str, value: Optional[str], *, max_length: Optional[int] = None) -> Optional[str]:
    cleaned = sanitize_text(value)
    if cleaned is not None and max_length is not None and len(cleaned) > max_length:
        raise InvalidArgumentError.for_field(
            field, f"{field} must be at most {max_length} characters", value
        )
    return cleaned
