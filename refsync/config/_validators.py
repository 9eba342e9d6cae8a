from __future__ import annotations

from typing import Any


def _parse_positive_int(value: Any, *, name: str, default: int, maximum: int | None = None) -> int:
    try:
        parsed = int(str(value if value not in (None, "") else default))
    except ValueError as exc:
        msg = f"{name} must be a valid integer"
        raise ValueError(msg) from exc
    if parsed <= 0:
        msg = f"{name} must be positive"
        raise ValueError(msg)
    if maximum is not None and parsed > maximum:
        msg = f"{name} must be {maximum} or fewer"
        raise ValueError(msg)
    return parsed


def _parse_positive_float(value: Any, *, name: str, default: float) -> float:
    try:
        parsed = float(str(value if value not in (None, "") else default))
    except ValueError as exc:
        msg = f"{name} must be a valid number"
        raise ValueError(msg) from exc
    if parsed <= 0:
        msg = f"{name} must be positive"
        raise ValueError(msg)
    return parsed


def _normalize_base_url(value: Any, *, default: str) -> str:
    url = str(value or default).strip()
    if not url:
        return default
    if not url.startswith(("http://", "https://")):
        msg = f"Terminology server URL must start with http:// or https://: {url}"
        raise ValueError(msg)
    return url.rstrip("/")
