from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from .errors import AuthError, UpstreamError, ValidationError
from .records import AthleteProfile, TokenGrant
from .strava_client import StravaClient


logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER_SECONDS = 60

ClientFactory = Callable[[str | None], StravaClient]


@dataclass(frozen=True)
class Credential:
    athlete_id: int
    access_token: str
    refresh_token: str
    expires_at: int
    scope: str = ""

    @classmethod
    def from_grant(cls, athlete_id: int, grant: TokenGrant) -> "Credential":
        return cls(
            athlete_id=athlete_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            scope=grant.scope,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "athlete_id": self.athlete_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Credential":
        return cls(
            athlete_id=int(payload["athlete_id"]),
            access_token=str(payload["access_token"]),
            refresh_token=str(payload["refresh_token"]),
            expires_at=int(payload["expires_at"]),
            scope=str(payload.get("scope") or ""),
        )


class TokenManager:
    """Keeps a rider's Strava credential usable for the length of one sync."""

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._client_factory = client_factory
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self._clock = clock

    def needs_refresh(self, credential: Credential, *, now: float | None = None) -> bool:
        current = self._clock() if now is None else now
        return current > credential.expires_at - self.refresh_buffer_seconds

    def ensure_valid(self, credential: Credential, *, now: float | None = None) -> Credential:
        if not self.needs_refresh(credential, now=now):
            return credential

        logger.info("Access token for athlete %s expires at %s; refreshing.", credential.athlete_id, credential.expires_at)
        client = self._client_factory(None)
        try:
            grant = client.refresh_access_token(credential.refresh_token)
        except (UpstreamError, ValidationError) as exc:
            raise AuthError(f"Token refresh failed for athlete {credential.athlete_id}: {exc}") from exc

        return replace(
            credential,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=grant.expires_at,
            scope=grant.scope or credential.scope,
        )

    def exchange_code(self, code: str) -> tuple[Credential, AthleteProfile]:
        client = self._client_factory(None)
        try:
            grant = client.exchange_code(code)
        except (UpstreamError, ValidationError) as exc:
            raise AuthError(f"Authorization code exchange failed: {exc}") from exc

        athlete = grant.athlete
        if athlete is None:
            # Some grants omit the athlete summary; ask for it with the new token.
            try:
                athlete = self._client_factory(grant.access_token).get_athlete()
            except (UpstreamError, ValidationError) as exc:
                raise AuthError(f"Could not identify athlete after code exchange: {exc}") from exc
        return Credential.from_grant(athlete.id, grant), athlete
