import json
import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path

from bunnyhop.event_config import (
    DEFAULT_EVENT,
    Category,
    event_window,
    load_event_config,
    parse_event_config,
)


def _payload(**overrides):
    payload = {
        "event_name": "Test Hop",
        "tagline": "tag",
        "description": "desc",
        "event_date": "2026-04-04",
        "segments": [
            {"id": "1", "name": "One", "points": 10, "category": "Road"},
            {"id": 2, "name": "Two", "points": 20, "category": "Bonus", "description": "climb"},
        ],
    }
    payload.update(overrides)
    return payload


class TestEventConfig(unittest.TestCase):
    def test_event_window_is_utc_day(self) -> None:
        start, end = event_window(date(2026, 4, 4))
        self.assertEqual(start, datetime(2026, 4, 4, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 4, 5, tzinfo=timezone.utc))

    def test_parse_coerces_integer_ids(self) -> None:
        config = parse_event_config(_payload())
        self.assertEqual(config.segment_ids, frozenset({"1", "2"}))
        self.assertEqual(config.segments[1].category, Category.BONUS)
        self.assertEqual(config.max_points, 30)

    def test_duplicate_segment_ids_rejected(self) -> None:
        segments = [
            {"id": "1", "name": "One", "points": 10, "category": "Road"},
            {"id": 1, "name": "Again", "points": 5, "category": "Dirt"},
        ]
        with self.assertRaises(ValueError):
            parse_event_config(_payload(segments=segments))

    def test_unknown_category_rejected(self) -> None:
        segments = [{"id": "1", "name": "One", "points": 10, "category": "Gravel"}]
        with self.assertRaises(ValueError):
            parse_event_config(_payload(segments=segments))

    def test_negative_points_rejected(self) -> None:
        segments = [{"id": "1", "name": "One", "points": -1, "category": "Road"}]
        with self.assertRaises(ValueError):
            parse_event_config(_payload(segments=segments))

    def test_bad_date_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_event_config(_payload(event_date="April 4th"))

    def test_load_without_path_returns_default(self) -> None:
        self.assertIs(load_event_config(None), DEFAULT_EVENT)

    def test_load_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "event.json"
            path.write_text(json.dumps(_payload()), encoding="utf-8")
            config = load_event_config(path)
            self.assertEqual(config.event_name, "Test Hop")
            self.assertEqual(config.event_date, date(2026, 4, 4))

    def test_to_dict_includes_window_and_categories(self) -> None:
        payload = DEFAULT_EVENT.to_dict()
        self.assertEqual(payload["categories"], ["Road", "Dirt", "Bonus"])
        self.assertEqual(payload["window_start_utc"], "2026-02-17T00:00:00+00:00")
        self.assertEqual(payload["window_end_utc"], "2026-02-18T00:00:00+00:00")
        self.assertEqual(len(payload["segments"]), 8)


if __name__ == "__main__":
    unittest.main()
