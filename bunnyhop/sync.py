"""One end-to-end sync for one rider.

``validating_token -> [refreshing] -> fetching_activities -> extracting_segments
-> scoring -> persisted``, or ``failed`` from any state. A failed or cancelled
sync never writes to the result store.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import requests

from .activity_window import ActivityWindowFetcher
from .config import Settings
from .errors import AuthError, SyncCancelledError, SyncInProgressError, ValidationError
from .event_config import EventConfig
from .records import ActivitySummary, AthleteProfile
from .scoring import score
from .segments import SegmentExtractor
from .storage import (
    CredentialStore,
    ResultStore,
    RiderResult,
    acquire_runtime_lock,
    get_runtime_lock_owner,
    get_runtime_value,
    release_runtime_lock,
    set_runtime_value,
)
from .strava_client import StravaClient, build_session
from .token_manager import ClientFactory, Credential, TokenManager


logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    VALIDATING_TOKEN = "validating_token"
    REFRESHING = "refreshing"
    FETCHING_ACTIVITIES = "fetching_activities"
    EXTRACTING_SEGMENTS = "extracting_segments"
    SCORING = "scoring"
    PERSISTED = "persisted"
    FAILED = "failed"


SyncClientFactory = Callable[[str | None, threading.Event], StravaClient]


def sync_lock_name(athlete_id: int) -> str:
    return f"sync.athlete.{athlete_id}"


def _status_key(athlete_id: int, suffix: str) -> str:
    return f"sync.athlete.{athlete_id}.{suffix}"


class SyncRunner:
    def __init__(
        self,
        settings: Settings,
        event: EventConfig,
        *,
        result_store: ResultStore,
        credential_store: CredentialStore,
        client_factory: SyncClientFactory,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.event = event
        self.result_store = result_store
        self.credential_store = credential_store
        self._client_factory = client_factory
        self._clock = clock
        self.state = SyncState.IDLE

    def _bind(self, cancel_event: threading.Event) -> ClientFactory:
        return lambda access_token: self._client_factory(access_token, cancel_event)

    def _transition(self, athlete_id: int, state: SyncState) -> None:
        logger.info("Sync for athlete %s: %s -> %s", athlete_id, self.state.value, state.value)
        self.state = state

    def _check_cancelled(self, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise SyncCancelledError("Sync cancelled before completion.")

    def _record_status(self, athlete_id: int, status: str, error: str | None = None) -> None:
        db_path = self.settings.runtime_db_file
        now_iso = datetime.now(timezone.utc).isoformat()
        set_runtime_value(db_path, _status_key(athlete_id, "last_status"), status)
        set_runtime_value(db_path, _status_key(athlete_id, "last_status_at_utc"), now_iso)
        if error:
            set_runtime_value(db_path, _status_key(athlete_id, "last_error"), error)
        else:
            set_runtime_value(db_path, _status_key(athlete_id, "last_success_at_utc"), now_iso)

    def _fetch_profile_and_activities(
        self,
        credential: Credential,
        cancel_event: threading.Event,
    ) -> tuple[AthleteProfile, list[ActivitySummary]]:
        factory = self._bind(cancel_event)
        fetcher = ActivityWindowFetcher(
            factory,
            per_page=self.settings.activity_page_size,
            max_pages=self.settings.max_activity_pages,
        )
        window_start, window_end = self.event.window
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix="sync-fetch")
        try:
            profile_future = executor.submit(lambda: factory(credential.access_token).get_athlete())
            activities_future = executor.submit(fetcher.list_activities, credential, window_start, window_end)
            done, _pending = concurrent.futures.wait(
                [profile_future, activities_future],
                return_when=concurrent.futures.FIRST_EXCEPTION,
            )
            for future in (profile_future, activities_future):
                if future in done and future.exception() is not None:
                    cancel_event.set()
                    raise future.exception()
            return profile_future.result(), activities_future.result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def run(self, athlete_id: int, *, cancel_event: threading.Event | None = None) -> RiderResult:
        cancel_event = cancel_event or threading.Event()
        owner = f"sync:{uuid.uuid4().hex}"
        lock_name = sync_lock_name(athlete_id)
        if not acquire_runtime_lock(
            self.settings.runtime_db_file,
            lock_name,
            owner,
            ttl_seconds=self.settings.sync_lock_ttl_seconds,
        ):
            current_owner = get_runtime_lock_owner(self.settings.runtime_db_file, lock_name)
            logger.info("Skipping sync for athlete %s; another sync is running (owner=%s).", athlete_id, current_owner)
            raise SyncInProgressError(f"A sync for athlete {athlete_id} is already running.")

        self.state = SyncState.IDLE
        try:
            result = self._run_locked(athlete_id, cancel_event)
        except Exception as exc:
            self._transition(athlete_id, SyncState.FAILED)
            self._record_status(athlete_id, SyncState.FAILED.value, error=f"{type(exc).__name__}: {exc}")
            raise
        finally:
            release_runtime_lock(self.settings.runtime_db_file, lock_name, owner)

        self._record_status(athlete_id, SyncState.PERSISTED.value)
        return result

    def _run_locked(self, athlete_id: int, cancel_event: threading.Event) -> RiderResult:
        self._transition(athlete_id, SyncState.VALIDATING_TOKEN)
        credential = self.credential_store.get(athlete_id)
        if credential is None:
            raise AuthError(f"No Strava credential stored for athlete {athlete_id}.")

        token_manager = TokenManager(
            self._bind(cancel_event),
            refresh_buffer_seconds=self.settings.token_refresh_buffer_seconds,
            clock=self._clock,
        )
        if token_manager.needs_refresh(credential):
            self._transition(athlete_id, SyncState.REFRESHING)
            credential = token_manager.ensure_valid(credential)
            # Strava rotates refresh tokens, so keep the new one even if the sync later fails.
            self.credential_store.save(credential)

        self._check_cancelled(cancel_event)
        self._transition(athlete_id, SyncState.FETCHING_ACTIVITIES)
        profile, activities = self._fetch_profile_and_activities(credential, cancel_event)
        if profile.id != athlete_id:
            raise ValidationError(f"Strava profile {profile.id} does not match signed-in athlete {athlete_id}.")

        self._check_cancelled(cancel_event)
        self._transition(athlete_id, SyncState.EXTRACTING_SEGMENTS)
        extractor = SegmentExtractor(
            self._bind(cancel_event),
            self.event.segment_ids,
            max_workers=self.settings.detail_fetch_workers,
            cancel_event=cancel_event,
        )
        completed = extractor.extract_completed_segments(credential, [activity.id for activity in activities])

        self._check_cancelled(cancel_event)
        self._transition(athlete_id, SyncState.SCORING)
        result = RiderResult(
            athlete_id=profile.id,
            name=profile.display_name,
            profile_photo_url=profile.profile_photo_url,
            total_points=score(completed, self.event.segments),
            completed_segment_ids=completed,
            fetched_at=datetime.now(timezone.utc),
        )

        self._check_cancelled(cancel_event)
        self.result_store.upsert(result)
        self._transition(athlete_id, SyncState.PERSISTED)
        return result


def build_stores(settings: Settings) -> tuple[ResultStore, CredentialStore]:
    results = ResultStore(
        settings.results_file,
        settings.runtime_db_file,
        lock_timeout_seconds=settings.store_lock_timeout_seconds,
    )
    credentials = CredentialStore(
        settings.strava_token_file,
        settings.runtime_db_file,
        lock_timeout_seconds=settings.store_lock_timeout_seconds,
    )
    return results, credentials


def run_sync(
    settings: Settings,
    event: EventConfig,
    athlete_id: int,
    *,
    cancel_event: threading.Event | None = None,
) -> RiderResult:
    result_store, credential_store = build_stores(settings)
    session = build_session(pool_size=max(2, settings.detail_fetch_workers + 1))
    try:
        runner = SyncRunner(
            settings,
            event,
            result_store=result_store,
            credential_store=credential_store,
            client_factory=client_factory_for(settings, session),
        )
        return runner.run(athlete_id, cancel_event=cancel_event)
    finally:
        session.close()


def client_factory_for(settings: Settings, session: requests.Session) -> SyncClientFactory:
    """Clients for one sync, all sharing the caller's session."""

    def factory(access_token: str | None, cancel_event: threading.Event) -> StravaClient:
        return StravaClient(settings, access_token=access_token, session=session, cancel_event=cancel_event)

    return factory


def sync_status(settings: Settings, athlete_id: int) -> dict[str, str | None]:
    db_path = settings.runtime_db_file
    return {
        "last_status": get_runtime_value(db_path, _status_key(athlete_id, "last_status")),
        "last_status_at_utc": get_runtime_value(db_path, _status_key(athlete_id, "last_status_at_utc")),
        "last_error": get_runtime_value(db_path, _status_key(athlete_id, "last_error")),
        "last_success_at_utc": get_runtime_value(db_path, _status_key(athlete_id, "last_success_at_utc")),
    }
