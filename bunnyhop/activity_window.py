from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .event_config import event_window
from .records import ActivitySummary
from .token_manager import ClientFactory, Credential


logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_ACTIVITY_PAGES = 20

__all__ = ["ActivityWindowFetcher", "event_window", "in_window"]


def in_window(activity: ActivitySummary, window_start: datetime, window_end: datetime) -> bool:
    # Summaries without a start time were already filtered by the provider.
    if activity.start_date is None:
        return True
    return window_start <= activity.start_date < window_end


class ActivityWindowFetcher:
    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        per_page: int = DEFAULT_PAGE_SIZE,
        max_pages: int = MAX_ACTIVITY_PAGES,
    ):
        self._client_factory = client_factory
        self.per_page = per_page
        self.max_pages = max_pages

    def list_activities(
        self,
        credential: Credential,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ActivitySummary]:
        client = self._client_factory(credential.access_token)
        # Strava's ``after`` bound is exclusive; widen by one second and filter locally.
        after = window_start - timedelta(seconds=1)

        activities: list[ActivitySummary] = []
        page = 1
        while page <= self.max_pages:
            page_items = client.get_activities_page(
                after=after,
                before=window_end,
                page=page,
                per_page=self.per_page,
            )
            activities.extend(page_items)
            if len(page_items) < self.per_page:
                break
            page += 1
        else:
            logger.warning(
                "Strava activities pagination hit cap (%s pages, per_page=%s). Results may be truncated.",
                self.max_pages,
                self.per_page,
            )

        in_range = [activity for activity in activities if in_window(activity, window_start, window_end)]
        logger.info(
            "Athlete %s has %s activit%s in window %s to %s.",
            credential.athlete_id,
            len(in_range),
            "y" if len(in_range) == 1 else "ies",
            window_start.isoformat(),
            window_end.isoformat(),
        )
        return in_range
