"""Base helpers shared by hookrelay models."""

from __future__ import annotations

from uuid import uuid4


def generate_id(prefix: str) -> str:
    """Generate a unique ID with the given prefix.

    Examples:
        generate_id("whk") -> "whk_a1b2c3d4e5f6a1b2"
        generate_id("dlv") -> "dlv_a1b2c3d4e5f6a1b2"
    """
    return f"{prefix}_{uuid4().hex[:16]}"


def truncate(text: str | None, limit: int) -> str | None:
    """Truncate text to ``limit`` characters, keeping None as None."""
    if text is None:
        return None
    return text[:limit]
