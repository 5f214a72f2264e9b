"""Static event configuration: the segment catalog and the event date.

The catalog is loaded once at process start and never mutated afterwards. A
JSON file can replace the built-in event; its shape mirrors ``to_dict``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

EVENT_WINDOW = timedelta(hours=24)


class Category(str, Enum):
    ROAD = "Road"
    DIRT = "Dirt"
    BONUS = "Bonus"


# Display order used by every grouped view.
CATEGORIES: tuple[Category, ...] = (Category.ROAD, Category.DIRT, Category.BONUS)


@dataclass(frozen=True)
class Segment:
    id: str
    name: str
    points: int
    category: Category
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "points": self.points,
            "category": self.category.value,
            "description": self.description,
        }


def event_window(event_date: date) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` for the 24-hour UTC event day."""
    start = datetime(event_date.year, event_date.month, event_date.day, tzinfo=timezone.utc)
    return start, start + EVENT_WINDOW


@dataclass(frozen=True)
class EventConfig:
    event_name: str
    tagline: str
    description: str
    event_date: date
    segments: tuple[Segment, ...] = field(default_factory=tuple)

    @property
    def segment_ids(self) -> frozenset[str]:
        return frozenset(segment.id for segment in self.segments)

    @property
    def max_points(self) -> int:
        return sum(segment.points for segment in self.segments)

    @property
    def window(self) -> tuple[datetime, datetime]:
        return event_window(self.event_date)

    def to_dict(self) -> dict[str, Any]:
        start, end = self.window
        return {
            "event_name": self.event_name,
            "tagline": self.tagline,
            "description": self.description,
            "event_date": self.event_date.isoformat(),
            "window_start_utc": start.isoformat(),
            "window_end_utc": end.isoformat(),
            "categories": [category.value for category in CATEGORIES],
            "max_points": self.max_points,
            "segments": [segment.to_dict() for segment in self.segments],
        }


DEFAULT_EVENT = EventConfig(
    event_name="The Bunny Hop",
    tagline="Spring's Greatest Cycling Adventure",
    description=(
        "Saddle up for The Bunny Hop, a self-guided cycling adventure through rolling roads, "
        "muddy trails, and secret climbs. Complete as many checkpoints as you can on event day "
        "to rack up points and claim your place on the leaderboard."
    ),
    event_date=date(2026, 2, 17),
    segments=(
        Segment("1152863", "Vineyard", 10, Category.ROAD, "Warm-up along the vineyard lanes."),
        Segment("234567", "Valley Sprint", 10, Category.ROAD, "Flat-out effort through the valley floor."),
        Segment("345678", "Orchard Loop", 15, Category.ROAD, "Rolling roads past spring blossoms."),
        Segment("456789", "Muddy Singletrack", 20, Category.DIRT, "Technical singletrack through the woods, expect mud."),
        Segment("567890", "Gravel Grind", 20, Category.DIRT, "Five kilometres of chunky gravel."),
        Segment("678901", "Forest Trail", 25, Category.DIRT, "Root-strewn descent through old-growth forest."),
        Segment("789012", "Secret Climb", 50, Category.BONUS, "Find it. Climb it. Say nothing."),
        Segment("890123", "Summit Surprise", 40, Category.BONUS, "The highest point of the day."),
    ),
)


def _parse_segment(raw: Any, index: int) -> Segment:
    if not isinstance(raw, dict):
        raise ValueError(f"segments[{index}] must be an object.")

    segment_id = raw.get("id")
    if isinstance(segment_id, bool) or not isinstance(segment_id, (str, int)):
        raise ValueError(f"segments[{index}].id must be a string or integer.")
    segment_id = str(segment_id).strip()
    if not segment_id:
        raise ValueError(f"segments[{index}].id must not be empty.")

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"segments[{index}].name is required.")

    points = raw.get("points")
    if isinstance(points, bool) or not isinstance(points, int) or points < 0:
        raise ValueError(f"segments[{index}].points must be a non-negative integer.")

    try:
        category = Category(raw.get("category"))
    except ValueError as exc:
        allowed = ", ".join(category.value for category in CATEGORIES)
        raise ValueError(f"segments[{index}].category must be one of: {allowed}.") from exc

    description = raw.get("description")
    if description is not None and not isinstance(description, str):
        raise ValueError(f"segments[{index}].description must be a string.")

    return Segment(
        id=segment_id,
        name=name.strip(),
        points=points,
        category=category,
        description=description,
    )


def parse_event_config(payload: Any) -> EventConfig:
    if not isinstance(payload, dict):
        raise ValueError("Event config must be a JSON object.")

    raw_date = payload.get("event_date")
    try:
        event_date = date.fromisoformat(str(raw_date).strip())
    except ValueError as exc:
        raise ValueError("event_date must be an ISO date such as 2026-04-04.") from exc

    raw_segments = payload.get("segments")
    if not isinstance(raw_segments, list):
        raise ValueError("segments must be a list.")
    segments = tuple(_parse_segment(item, index) for index, item in enumerate(raw_segments))

    seen: set[str] = set()
    for segment in segments:
        if segment.id in seen:
            raise ValueError(f"Duplicate segment id in catalog: {segment.id}")
        seen.add(segment.id)

    return EventConfig(
        event_name=str(payload.get("event_name") or DEFAULT_EVENT.event_name).strip(),
        tagline=str(payload.get("tagline") or "").strip(),
        description=str(payload.get("description") or "").strip(),
        event_date=event_date,
        segments=segments,
    )


def load_event_config(path: Path | None) -> EventConfig:
    if path is None:
        return DEFAULT_EVENT
    payload = json.loads(path.read_text(encoding="utf-8"))
    config = parse_event_config(payload)
    logger.info(
        "Loaded event '%s' on %s with %s segment(s) from %s.",
        config.event_name,
        config.event_date.isoformat(),
        len(config.segments),
        path,
    )
    return config
