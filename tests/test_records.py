import unittest
from datetime import datetime, timezone

from bunnyhop.errors import ValidationError
from bunnyhop.records import ActivityDetail, ActivitySummary, AthleteProfile, TokenGrant


class TestRecords(unittest.TestCase):
    def test_athlete_prefers_medium_photo(self) -> None:
        athlete = AthleteProfile.from_payload(
            {"id": 7, "firstname": "Ada", "lastname": "Lovelace", "profile": "large.jpg", "profile_medium": "medium.jpg"}
        )
        self.assertEqual(athlete.display_name, "Ada Lovelace")
        self.assertEqual(athlete.profile_photo_url, "medium.jpg")

    def test_athlete_without_names_gets_fallback(self) -> None:
        athlete = AthleteProfile.from_payload({"id": 7})
        self.assertEqual(athlete.display_name, "Athlete 7")
        self.assertEqual(athlete.profile_photo_url, "")

    def test_athlete_requires_id(self) -> None:
        with self.assertRaises(ValidationError):
            AthleteProfile.from_payload({"firstname": "Ada"})

    def test_token_grant_requires_tokens(self) -> None:
        with self.assertRaises(ValidationError):
            TokenGrant.from_payload({"access_token": "a", "expires_at": 1})

    def test_token_grant_parses_athlete_and_scope_list(self) -> None:
        grant = TokenGrant.from_payload(
            {
                "access_token": "a",
                "refresh_token": "r",
                "expires_at": "1700000000",
                "scope": ["read", "activity:read"],
                "athlete": {"id": 9, "firstname": "Bo"},
            }
        )
        self.assertEqual(grant.expires_at, 1700000000)
        self.assertEqual(grant.scope, "read,activity:read")
        self.assertEqual(grant.athlete.id, 9)

    def test_activity_summary_parses_start_date(self) -> None:
        summary = ActivitySummary.from_payload({"id": 1, "start_date": "2026-02-17T08:00:00Z"})
        self.assertEqual(summary.start_date, datetime(2026, 2, 17, 8, tzinfo=timezone.utc))
        self.assertEqual(summary.name, "Activity 1")

    def test_activity_summary_rejects_garbage_start_date(self) -> None:
        with self.assertRaises(ValidationError):
            ActivitySummary.from_payload({"id": 1, "start_date": "yesterday"})

    def test_activity_detail_collects_segment_ids(self) -> None:
        detail = ActivityDetail.from_payload(
            {
                "id": 5,
                "segment_efforts": [
                    {"id": 1, "segment": {"id": 111}, "elapsed_time": 30},
                    {"id": 2, "segment": {"id": 222}},
                    {"id": 3, "segment": {"id": 111}},
                ],
            }
        )
        self.assertEqual(detail.segment_ids, frozenset({"111", "222"}))
        self.assertEqual(len(detail.segment_efforts), 3)
        self.assertEqual(detail.segment_efforts[0].activity_id, 5)

    def test_activity_detail_without_efforts_is_empty(self) -> None:
        self.assertEqual(ActivityDetail.from_payload({"id": 5}).segment_ids, frozenset())

    def test_activity_detail_rejects_effort_without_segment(self) -> None:
        with self.assertRaises(ValidationError):
            ActivityDetail.from_payload({"id": 5, "segment_efforts": [{"id": 1}]})

    def test_non_object_payload_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            ActivityDetail.from_payload(["not", "an", "object"])


if __name__ == "__main__":
    unittest.main()
