"""Point scoring against the static segment catalog.

Only the presence of a segment id matters: duplicate ids, repeat efforts and
effort timing never change a score.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from .event_config import CATEGORIES, Segment


def score(completed_ids: Iterable[str], catalog: Sequence[Segment]) -> int:
    completed = set(completed_ids)
    return sum(segment.points for segment in catalog if segment.id in completed)


def max_points(catalog: Sequence[Segment]) -> int:
    return sum(segment.points for segment in catalog)


def segment_statuses(completed_ids: Iterable[str], catalog: Sequence[Segment]) -> list[dict[str, Any]]:
    completed = set(completed_ids)
    return [
        {
            "segment_id": segment.id,
            "name": segment.name,
            "points": segment.points,
            "category": segment.category.value,
            "description": segment.description,
            "completed": segment.id in completed,
        }
        for segment in catalog
    ]


def category_breakdown(completed_ids: Iterable[str], catalog: Sequence[Segment]) -> list[dict[str, Any]]:
    completed = set(completed_ids)
    breakdown = []
    for category in CATEGORIES:
        in_category = [segment for segment in catalog if segment.category == category]
        if not in_category:
            continue
        done = [segment for segment in in_category if segment.id in completed]
        breakdown.append(
            {
                "category": category.value,
                "completed_count": len(done),
                "segment_count": len(in_category),
                "points_earned": sum(segment.points for segment in done),
                "points_available": sum(segment.points for segment in in_category),
            }
        )
    return breakdown


def completion_percentage(total_points: int, catalog: Sequence[Segment]) -> int:
    available = max_points(catalog)
    if available <= 0:
        return 0
    return round(total_points / available * 100)
