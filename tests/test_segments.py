import threading
import unittest
from dataclasses import replace

from bunnyhop.config import Settings
from bunnyhop.errors import SyncCancelledError, UpstreamError
from bunnyhop.records import ActivityDetail, SegmentEffort
from bunnyhop.segments import SegmentExtractor, collect_segment_ids
from bunnyhop.strava_client import StravaClient
from bunnyhop.token_manager import Credential


CREDENTIAL = Credential(athlete_id=7, access_token="token", refresh_token="refresh", expires_at=0)
CATALOG_IDS = {"100", "200", "300"}


def _detail(activity_id: int, *segment_ids: str) -> ActivityDetail:
    efforts = tuple(SegmentEffort(segment_id=segment_id, activity_id=activity_id) for segment_id in segment_ids)
    return ActivityDetail(id=activity_id, segment_efforts=efforts)


class _DetailClient:
    def __init__(self, details, failing=()):
        self.details = details
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()

    def get_activity_details(self, activity_id):
        with self._lock:
            self.calls.append(activity_id)
        if activity_id in self.failing:
            raise UpstreamError(f"Strava activity {activity_id} failed with HTTP 500.", status_code=500)
        return self.details[activity_id]


class _OverlappingSession:
    """Activity 1 stalls until the sync is cancelled; activity 2 fails while it waits."""

    def __init__(self, cancel_event):
        self.cancel_event = cancel_event
        self.first_started = threading.Event()
        self.urls = []
        self._lock = threading.Lock()

    def request(self, method, url, timeout=None, **kwargs):
        with self._lock:
            self.urls.append(url)
        if url.endswith("/activities/1"):
            self.first_started.set()
            self.cancel_event.wait(5)
            return _Response(503)
        self.first_started.wait(5)
        return _Response(404)


class _Response:
    def __init__(self, status_code):
        self.status_code = status_code
        self.headers = {}


class _RecordingClient(StravaClient):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.errors = {}

    def get_activity_details(self, activity_id):
        try:
            return super().get_activity_details(activity_id)
        except Exception as exc:
            self.errors[activity_id] = exc
            raise


class TestSegmentExtractor(unittest.TestCase):
    def test_union_across_activities_filtered_to_catalog(self) -> None:
        client = _DetailClient(
            {
                1: _detail(1, "100", "999"),
                2: _detail(2, "100", "300"),
                3: _detail(3),
            }
        )
        extractor = SegmentExtractor(lambda token: client, CATALOG_IDS, max_workers=2)
        completed = extractor.extract_completed_segments(CREDENTIAL, [1, 2, 3])

        self.assertEqual(completed, frozenset({"100", "300"}))
        self.assertEqual(sorted(client.calls), [1, 2, 3])

    def test_duplicate_activity_ids_fetched_once(self) -> None:
        client = _DetailClient({1: _detail(1, "200")})
        extractor = SegmentExtractor(lambda token: client, CATALOG_IDS)
        self.assertEqual(extractor.extract_completed_segments(CREDENTIAL, [1, 1, 1]), frozenset({"200"}))
        self.assertEqual(client.calls, [1])

    def test_no_activities_makes_no_calls(self) -> None:
        factory_calls = []

        def factory(token):
            factory_calls.append(token)
            return _DetailClient({})

        extractor = SegmentExtractor(factory, CATALOG_IDS)
        self.assertEqual(extractor.extract_completed_segments(CREDENTIAL, []), frozenset())
        self.assertEqual(factory_calls, [])

    def test_single_failure_aborts_extraction(self) -> None:
        client = _DetailClient({1: _detail(1, "100"), 3: _detail(3, "300")}, failing={2})
        cancel_event = threading.Event()
        extractor = SegmentExtractor(lambda token: client, CATALOG_IDS, max_workers=1, cancel_event=cancel_event)

        with self.assertRaises(UpstreamError):
            extractor.extract_completed_segments(CREDENTIAL, [1, 2, 3])
        self.assertTrue(cancel_event.is_set())

    def test_failure_cancels_in_flight_fetch_before_its_retry(self) -> None:
        cancel_event = threading.Event()
        session = _OverlappingSession(cancel_event)
        settings = replace(
            Settings.from_env(getenv={"STRAVA_CLIENT_ID": "cid", "STRAVA_CLIENT_SECRET": "csecret"}.get),
            service_retry_backoff_seconds=0.0,
        )
        client = _RecordingClient(settings, access_token="token", session=session, cancel_event=cancel_event)
        extractor = SegmentExtractor(lambda token: client, CATALOG_IDS, max_workers=2, cancel_event=cancel_event)

        with self.assertRaises(UpstreamError):
            extractor.extract_completed_segments(CREDENTIAL, [1, 2])

        self.assertTrue(cancel_event.is_set())
        self.assertEqual(sum(url.endswith("/activities/1") for url in session.urls), 1)
        self.assertIsInstance(client.errors[1], SyncCancelledError)

    def test_collect_segment_ids(self) -> None:
        self.assertEqual(collect_segment_ids([_detail(1, "a"), _detail(2, "a", "b")]), {"a", "b"})


if __name__ == "__main__":
    unittest.main()
