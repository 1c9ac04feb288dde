"""Display helpers for the dashboard's token counter."""

from enum import Enum


class UsageLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def format_percent_used(pct: float) -> str:
    """Percent with enough precision that a single token of usage is visible."""
    if pct < 0.01:
        return f"{pct:.3f}%"
    if pct < 1:
        return f"{pct:.2f}%"
    return f"{pct:.1f}%"


def format_token_count(n: int) -> str:
    # Two decimals for partial units so 99_992 reads 99.99K, not 100.0K.
    if n >= 1_000_000:
        millions = n / 1_000_000
        return f"{millions:.0f}M" if n % 1_000_000 == 0 else f"{millions:.2f}M"
    if n >= 1000:
        thousands = n / 1000
        return f"{thousands:.0f}K" if n % 1000 == 0 else f"{thousands:.2f}K"
    return str(n)


def usage_level(pct: float) -> UsageLevel:
    if pct < 50:
        return UsageLevel.LOW
    if pct < 75:
        return UsageLevel.MEDIUM
    return UsageLevel.HIGH
