from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Iterable

from .records import ActivityDetail
from .token_manager import ClientFactory, Credential


logger = logging.getLogger(__name__)

DEFAULT_DETAIL_WORKERS = 4


def collect_segment_ids(details: Iterable[ActivityDetail]) -> set[str]:
    completed: set[str] = set()
    for detail in details:
        completed |= detail.segment_ids
    return completed


class SegmentExtractor:
    """Collects the catalog segments a rider traversed across a set of activities.

    Detail fetches run on a bounded pool. The first failure aborts the whole
    extraction: queued fetches are cancelled and ``cancel_event`` is set so
    in-flight clients stop before their next call.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        catalog_ids: Iterable[str],
        *,
        max_workers: int = DEFAULT_DETAIL_WORKERS,
        cancel_event: threading.Event | None = None,
    ):
        self._client_factory = client_factory
        self.catalog_ids = frozenset(catalog_ids)
        self.max_workers = max(1, max_workers)
        self.cancel_event = cancel_event or threading.Event()

    def extract_completed_segments(self, credential: Credential, activity_ids: Iterable[int]) -> frozenset[str]:
        ids = list(dict.fromkeys(activity_ids))
        if not ids:
            return frozenset()

        client = self._client_factory(credential.access_token)
        details: list[ActivityDetail] = []
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(ids)),
            thread_name_prefix="segment-detail",
        )
        try:
            futures = [executor.submit(client.get_activity_details, activity_id) for activity_id in ids]
            done, not_done = concurrent.futures.wait(futures, return_when=concurrent.futures.FIRST_EXCEPTION)
            failed = [future for future in futures if future in done and future.exception() is not None]
            if failed:
                self.cancel_event.set()
                for future in not_done:
                    future.cancel()
                raise failed[0].exception()
            details = [future.result() for future in futures]
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        seen = collect_segment_ids(details)
        completed = frozenset(seen & self.catalog_ids)
        dropped = len(seen) - len(completed)
        logger.info(
            "Athlete %s completed %s catalog segment(s) across %s activit%s (%s non-catalog segment(s) ignored).",
            credential.athlete_id,
            len(completed),
            len(ids),
            "y" if len(ids) == 1 else "ies",
            dropped,
        )
        return completed
