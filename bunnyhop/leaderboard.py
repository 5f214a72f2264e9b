from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from .storage import ResultStore, RiderResult


logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30
DEFAULT_STALE_SECONDS = 60


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    result: RiderResult

    def to_dict(self) -> dict[str, Any]:
        payload = self.result.to_dict()
        payload["rank"] = self.rank
        return payload


def rank_results(results: Sequence[RiderResult]) -> list[LeaderboardEntry]:
    """Attach 1-based ranks in the order ``ResultStore.list_all`` returns."""
    return [LeaderboardEntry(rank=index + 1, result=result) for index, result in enumerate(results)]


def read_leaderboard(store: ResultStore) -> list[LeaderboardEntry]:
    return rank_results(store.list_all())


def cache_control_header(ttl_seconds: int, stale_seconds: int) -> str:
    return f"public, max-age={ttl_seconds}, s-maxage={ttl_seconds}, stale-while-revalidate={stale_seconds}"


class LeaderboardCache:
    """Short-lived in-process copy of the ranked leaderboard.

    Fresh reads are served from memory. Reads inside the stale window get the
    old copy while one background refresh rebuilds it; older copies are rebuilt
    inline.
    """

    def __init__(
        self,
        store: ResultStore,
        *,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        stale_seconds: int = DEFAULT_STALE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        executor: concurrent.futures.Executor | None = None,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="leaderboard-refresh",
        )
        self._guard = threading.Lock()
        self._entries: list[LeaderboardEntry] | None = None
        self._built_at: float | None = None
        self._refresh_future: concurrent.futures.Future | None = None
        self._generation = 0

    def _rebuild(self) -> list[LeaderboardEntry]:
        with self._guard:
            generation = self._generation
        entries = read_leaderboard(self.store)
        with self._guard:
            # Snapshots read before the latest invalidate() are not installed.
            if generation == self._generation:
                self._entries = entries
                self._built_at = self._clock()
        return entries

    def _run_background_refresh(self) -> None:
        try:
            self._rebuild()
        except Exception as exc:
            logger.warning("Background leaderboard refresh failed: %s", exc)

    def _schedule_background_refresh(self) -> bool:
        with self._guard:
            if self._refresh_future is not None and not self._refresh_future.done():
                return False
            self._refresh_future = self._executor.submit(self._run_background_refresh)
        return True

    def invalidate(self) -> None:
        with self._guard:
            self._generation += 1
            self._entries = None
            self._built_at = None

    def get(self) -> tuple[list[LeaderboardEntry], str]:
        with self._guard:
            entries = self._entries
            built_at = self._built_at

        if entries is not None and built_at is not None:
            age = self._clock() - built_at
            if age <= self.ttl_seconds:
                return entries, "fresh"
            if age <= self.ttl_seconds + self.stale_seconds:
                revalidating = self._schedule_background_refresh()
                return entries, "stale_revalidating" if revalidating else "stale"

        return self._rebuild(), "rebuilt"
