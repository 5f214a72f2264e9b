import threading
import unittest
from dataclasses import replace
from datetime import datetime, timezone

import requests

from bunnyhop.config import Settings
from bunnyhop.errors import AuthError, SyncCancelledError, UpstreamError, ValidationError
from bunnyhop.strava_client import API_URL, TOKEN_URL, StravaClient, _retry_after_seconds


class _DummyResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _DummySession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        outcome = self._responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _settings(**overrides) -> Settings:
    base = Settings.from_env(getenv={"STRAVA_CLIENT_ID": "cid", "STRAVA_CLIENT_SECRET": "csecret"}.get)
    return replace(base, **{"service_retry_backoff_seconds": 0.0, **overrides})


def _client(responses, *, access_token="token", cancel_event=None, **overrides):
    session = _DummySession(responses)
    client = StravaClient(
        _settings(**overrides),
        access_token=access_token,
        session=session,
        cancel_event=cancel_event,
    )
    return client, session


ATHLETE = {"id": 42, "firstname": "Jo", "lastname": "Rider", "profile_medium": "jo.jpg"}


class TestStravaClientRetries(unittest.TestCase):
    def test_retries_transient_status_then_succeeds(self) -> None:
        client, session = _client([_DummyResponse(503), _DummyResponse(200, ATHLETE)])
        athlete = client.get_athlete()
        self.assertEqual(athlete.id, 42)
        self.assertEqual(len(session.calls), 2)

    def test_retries_connection_errors(self) -> None:
        client, session = _client([requests.ConnectionError("reset"), _DummyResponse(200, ATHLETE)])
        self.assertEqual(client.get_athlete().display_name, "Jo Rider")
        self.assertEqual(len(session.calls), 2)

    def test_persistent_server_error_raises_upstream_error(self) -> None:
        client, session = _client([_DummyResponse(500), _DummyResponse(500), _DummyResponse(500)])
        with self.assertRaises(UpstreamError) as ctx:
            client.get_athlete()
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(len(session.calls), 3)

    def test_persistent_connection_error_raises_upstream_error(self) -> None:
        client, session = _client([requests.Timeout("slow")], service_retry_count=0)
        with self.assertRaises(UpstreamError):
            client.get_athlete()
        self.assertEqual(len(session.calls), 1)

    def test_unauthorized_is_not_retried(self) -> None:
        client, session = _client([_DummyResponse(401)])
        with self.assertRaises(AuthError):
            client.get_athlete()
        self.assertEqual(len(session.calls), 1)

    def test_not_found_is_not_retried(self) -> None:
        client, session = _client([_DummyResponse(404)])
        with self.assertRaises(UpstreamError) as ctx:
            client.get_activity_details(9)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(len(session.calls), 1)

    def test_cancelled_client_issues_no_calls(self) -> None:
        cancel_event = threading.Event()
        cancel_event.set()
        client, session = _client([_DummyResponse(200, ATHLETE)], cancel_event=cancel_event)
        with self.assertRaises(SyncCancelledError):
            client.get_athlete()
        self.assertEqual(session.calls, [])

    def test_missing_access_token_raises_auth_error(self) -> None:
        client, session = _client([], access_token=None)
        with self.assertRaises(AuthError):
            client.get_athlete()
        self.assertEqual(session.calls, [])

    def test_non_json_body_raises_validation_error(self) -> None:
        client, _session = _client([_DummyResponse(200, ValueError("not json"))])
        with self.assertRaises(ValidationError):
            client.get_athlete()


class TestRetryDelay(unittest.TestCase):
    def test_retry_after_header_is_honoured_and_capped(self) -> None:
        client, _session = _client([], service_retry_backoff_seconds=1.0, max_retry_after_seconds=60.0)
        self.assertEqual(client._retry_delay(1, _DummyResponse(429, headers={"Retry-After": "15"})), 15.0)
        self.assertEqual(client._retry_delay(1, _DummyResponse(429, headers={"Retry-After": "900"})), 60.0)

    def test_exponential_backoff_without_hint(self) -> None:
        client, _session = _client([], service_retry_backoff_seconds=1.0)
        self.assertEqual(client._retry_delay(1, None), 1.0)
        self.assertEqual(client._retry_delay(3, None), 4.0)

    def test_retry_after_parsing(self) -> None:
        self.assertIsNone(_retry_after_seconds(_DummyResponse(429)))
        self.assertIsNone(_retry_after_seconds(_DummyResponse(429, headers={"Retry-After": "whenever"})))
        self.assertEqual(_retry_after_seconds(_DummyResponse(429, headers={"Retry-After": "-5"})), 0.0)


class TestStravaClientRequests(unittest.TestCase):
    def test_activity_details_request_all_efforts(self) -> None:
        detail = {"id": 9, "segment_efforts": [{"segment": {"id": 1152863}}]}
        client, session = _client([_DummyResponse(200, detail)])
        result = client.get_activity_details(9)
        self.assertEqual(result.segment_ids, frozenset({"1152863"}))
        call = session.calls[0]
        self.assertEqual(call["url"], f"{API_URL}/activities/9")
        self.assertEqual(call["params"], {"include_all_efforts": "true"})
        self.assertEqual(call["headers"], {"Authorization": "Bearer token"})

    def test_activity_listing_sends_epoch_bounds(self) -> None:
        client, session = _client([_DummyResponse(200, [{"id": 1, "start_date": "2026-02-17T09:00:00Z"}])])
        after = datetime(2026, 2, 16, 23, 59, 59, tzinfo=timezone.utc)
        before = datetime(2026, 2, 18, tzinfo=timezone.utc)
        activities = client.get_activities_page(after=after, before=before, page=2, per_page=50)
        self.assertEqual([activity.id for activity in activities], [1])
        self.assertEqual(
            session.calls[0]["params"],
            {"after": int(after.timestamp()), "before": int(before.timestamp()), "page": 2, "per_page": 50},
        )

    def test_activity_listing_must_be_a_list(self) -> None:
        client, _session = _client([_DummyResponse(200, {"message": "oops"})])
        with self.assertRaises(ValidationError):
            client.get_activities_page(
                after=datetime(2026, 2, 17, tzinfo=timezone.utc),
                before=datetime(2026, 2, 18, tzinfo=timezone.utc),
                page=1,
                per_page=100,
            )

    def test_refresh_posts_refresh_grant_and_updates_token(self) -> None:
        grant = {"access_token": "new-access", "refresh_token": "new-refresh", "expires_at": 1700000000}
        client, session = _client([_DummyResponse(200, grant)], access_token="old-access")
        result = client.refresh_access_token("old-refresh")
        self.assertEqual(result.refresh_token, "new-refresh")
        self.assertEqual(client.access_token, "new-access")
        call = session.calls[0]
        self.assertEqual(call["url"], TOKEN_URL)
        self.assertEqual(call["data"]["grant_type"], "refresh_token")
        self.assertEqual(call["data"]["refresh_token"], "old-refresh")
        self.assertEqual(call["data"]["client_id"], "cid")

    def test_code_exchange_rejected_credentials(self) -> None:
        client, _session = _client([_DummyResponse(400, {"message": "Bad Request"})], access_token=None)
        with self.assertRaises(UpstreamError):
            client.exchange_code("bad-code")


if __name__ == "__main__":
    unittest.main()
