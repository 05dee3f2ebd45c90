"""
Explainability helpers.

Turns a factor breakdown into short human-readable lines for CLI output and logs.
"""

from __future__ import annotations

from livability.domain.models import BreakdownResult, FactorBreakdown


def describe_factor(row: FactorBreakdown) -> str:
    """One line per factor: distance, proximity and signed contribution."""
    if row.distance_m is None:
        where = f"none within {row.max_distance:.0f}m"
    else:
        where = f"nearest {row.distance_m:.0f}m ({row.nearby_count} within {row.max_distance:.0f}m)"
    return f"{row.factor_name}: {where}, proximity={row.proximity:.2f}, contribution={row.contribution:+.1f}"


def one_line_summary(result: BreakdownResult) -> str:
    """A compact overview: score, strongest pull and strongest push."""
    best = max((r for r in result.breakdown if r.contribution > 0), key=lambda r: r.contribution, default=None)
    worst = min((r for r in result.breakdown if r.contribution < 0), key=lambda r: r.contribution, default=None)
    parts = [f"score={result.value:+.1f}"]
    if best:
        parts.append(f"best={best.factor_id}")
    if worst:
        parts.append(f"worst={worst.factor_id}")
    return " ".join(parts)
