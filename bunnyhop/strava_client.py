from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

import requests
from requests.adapters import HTTPAdapter

from .config import Settings
from .errors import AuthError, SyncCancelledError, UpstreamError, ValidationError
from .records import ActivityDetail, ActivitySummary, AthleteProfile, TokenGrant


logger = logging.getLogger(__name__)

BASE_URL = "https://www.strava.com"
API_URL = f"{BASE_URL}/api/v3"
TOKEN_URL = f"{BASE_URL}/oauth/token"
AUTHORIZE_URL = f"{BASE_URL}/oauth/authorize"
OAUTH_SCOPE = "read,activity:read"

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
AUTH_STATUS_CODES = frozenset({401, 403})


def build_session(pool_size: int = 10) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def _retry_after_seconds(response: requests.Response) -> float | None:
    raw = str(response.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    return max(0.0, retry_at.timestamp() - time.time())


def _parse_json(response: requests.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ValidationError(f"{what} returned a non-JSON body.") from exc


class StravaClient:
    def __init__(
        self,
        settings: Settings,
        *,
        access_token: str | None = None,
        session: requests.Session | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.client_id = settings.strava_client_id
        self.client_secret = settings.strava_client_secret
        self.access_token = access_token
        self.timeout_seconds = settings.http_timeout_seconds
        self.retry_count = settings.service_retry_count
        self.retry_backoff_seconds = settings.service_retry_backoff_seconds
        self.max_retry_after_seconds = settings.max_retry_after_seconds
        self.session = session or build_session()
        self.cancel_event = cancel_event

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelledError("Sync cancelled; not issuing further Strava calls.")

    def _wait(self, seconds: float) -> None:
        if seconds <= 0:
            self._check_cancelled()
            return
        if self.cancel_event is not None:
            if self.cancel_event.wait(seconds):
                raise SyncCancelledError("Sync cancelled while waiting to retry a Strava call.")
            return
        time.sleep(seconds)

    def _retry_delay(self, attempt: int, response: requests.Response | None) -> float:
        delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
        if response is not None:
            hinted = _retry_after_seconds(response)
            if hinted is not None:
                delay = max(delay, hinted)
        return min(delay, self.max_retry_after_seconds)

    def _send(self, method: str, url: str, what: str, **kwargs: Any) -> requests.Response:
        attempts = max(1, self.retry_count + 1)
        for attempt in range(1, attempts + 1):
            self._check_cancelled()
            try:
                response = self.session.request(method, url, timeout=self.timeout_seconds, **kwargs)
            except requests.RequestException as exc:
                if attempt >= attempts:
                    raise UpstreamError(f"{what} failed after {attempts} attempt(s): {exc}") from exc
                delay = self._retry_delay(attempt, None)
                logger.warning(
                    "%s call failed (%s/%s): %s. Retrying in %ss.",
                    what,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                self._wait(delay)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < attempts:
                delay = self._retry_delay(attempt, response)
                logger.warning(
                    "%s returned HTTP %s (%s/%s). Retrying in %ss.",
                    what,
                    response.status_code,
                    attempt,
                    attempts,
                    delay,
                )
                self._wait(delay)
                continue
            return response
        raise AssertionError("unreachable")  # pragma: no cover

    def _raise_for_status(self, response: requests.Response, what: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status in AUTH_STATUS_CODES:
            raise AuthError(f"{what} rejected the credential (HTTP {status}).")
        raise UpstreamError(f"{what} failed with HTTP {status}.", status_code=status)

    def _request(self, method: str, path: str, what: str, *, params: dict[str, Any] | None = None) -> Any:
        if not self.access_token:
            raise AuthError("No Strava access token available for this rider.")
        response = self._send(
            method,
            f"{API_URL}{path}",
            what,
            headers={"Authorization": f"Bearer {self.access_token}"},
            params=params,
        )
        self._raise_for_status(response, what)
        return _parse_json(response, what)

    def _token_request(self, data: dict[str, Any], what: str) -> TokenGrant:
        response = self._send(
            "POST",
            TOKEN_URL,
            what,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                **data,
            },
        )
        self._raise_for_status(response, what)
        return TokenGrant.from_payload(_parse_json(response, what))

    def exchange_code(self, code: str) -> TokenGrant:
        return self._token_request({"code": code, "grant_type": "authorization_code"}, "Strava code exchange")

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        grant = self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
            "Strava token refresh",
        )
        self.access_token = grant.access_token
        logger.info("Strava access token refreshed.")
        return grant

    def get_athlete(self) -> AthleteProfile:
        return AthleteProfile.from_payload(self._request("GET", "/athlete", "Strava athlete profile"))

    def get_activities_page(
        self,
        *,
        after: datetime,
        before: datetime,
        page: int,
        per_page: int,
    ) -> list[ActivitySummary]:
        payload = self._request(
            "GET",
            "/athlete/activities",
            "Strava activity listing",
            params={
                "after": int(after.timestamp()),
                "before": int(before.timestamp()),
                "page": page,
                "per_page": per_page,
            },
        )
        if not isinstance(payload, list):
            raise ValidationError("Strava activity listing must be a list.")
        return [ActivitySummary.from_payload(item) for item in payload]

    def get_activity_details(self, activity_id: int) -> ActivityDetail:
        payload = self._request(
            "GET",
            f"/activities/{activity_id}",
            f"Strava activity {activity_id}",
            params={"include_all_efforts": "true"},
        )
        return ActivityDetail.from_payload(payload)
