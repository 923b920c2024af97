"""Shared building blocks for the lending services."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored timestamp uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


__all__ = ["utcnow"]
