"""Record shapes for the Strava endpoints the engine reads.

Payloads are validated here, on ingest, so the rest of the engine never touches
raw provider JSON.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .errors import ValidationError


def _require_dict(payload: Any, what: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError(f"{what} payload must be an object, got {type(payload).__name__}.")
    return payload


def _require_int(payload: dict[str, Any], key: str, what: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool):
        raise ValidationError(f"{what}.{key} must be an integer.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError(f"{what}.{key} must be an integer.")


def _require_token(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"token response is missing {key}.")
    return value.strip()


def _optional_str(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def parse_utc(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class AthleteProfile:
    id: int
    firstname: str
    lastname: str
    profile_photo_url: str

    @property
    def display_name(self) -> str:
        name = f"{self.firstname} {self.lastname}".strip()
        return name or f"Athlete {self.id}"

    @classmethod
    def from_payload(cls, payload: Any) -> "AthleteProfile":
        data = _require_dict(payload, "athlete")
        return cls(
            id=_require_int(data, "id", "athlete"),
            firstname=_optional_str(data.get("firstname")),
            lastname=_optional_str(data.get("lastname")),
            # Medium photo first, same as the sign-in profile mapping.
            profile_photo_url=_optional_str(data.get("profile_medium")) or _optional_str(data.get("profile")),
        )


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_at: int
    scope: str
    athlete: AthleteProfile | None

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenGrant":
        data = _require_dict(payload, "token")
        scope_raw = data.get("scope")
        if isinstance(scope_raw, list):
            scope = ",".join(str(item) for item in scope_raw)
        else:
            scope = _optional_str(scope_raw)
        athlete_raw = data.get("athlete")
        return cls(
            access_token=_require_token(data, "access_token"),
            refresh_token=_require_token(data, "refresh_token"),
            expires_at=_require_int(data, "expires_at", "token"),
            scope=scope,
            athlete=AthleteProfile.from_payload(athlete_raw) if isinstance(athlete_raw, dict) else None,
        )


@dataclass(frozen=True)
class ActivitySummary:
    id: int
    name: str
    start_date: datetime | None

    @classmethod
    def from_payload(cls, payload: Any) -> "ActivitySummary":
        data = _require_dict(payload, "activity")
        activity_id = _require_int(data, "id", "activity")
        raw_start = data.get("start_date")
        start_date = parse_utc(raw_start)
        if raw_start is not None and start_date is None:
            raise ValidationError(f"activity {activity_id} has an unparseable start_date: {raw_start!r}")
        return cls(
            id=activity_id,
            name=_optional_str(data.get("name")) or f"Activity {activity_id}",
            start_date=start_date,
        )


@dataclass(frozen=True)
class SegmentEffort:
    segment_id: str
    activity_id: int


@dataclass(frozen=True)
class ActivityDetail:
    id: int
    segment_efforts: tuple[SegmentEffort, ...]

    @property
    def segment_ids(self) -> frozenset[str]:
        return frozenset(effort.segment_id for effort in self.segment_efforts)

    @classmethod
    def from_payload(cls, payload: Any) -> "ActivityDetail":
        data = _require_dict(payload, "activity detail")
        activity_id = _require_int(data, "id", "activity detail")
        raw_efforts = data.get("segment_efforts")
        if raw_efforts is None:
            raw_efforts = []
        if not isinstance(raw_efforts, list):
            raise ValidationError(f"activity {activity_id} segment_efforts must be a list.")

        efforts = []
        for index, raw_effort in enumerate(raw_efforts):
            effort = _require_dict(raw_effort, f"activity {activity_id} segment_efforts[{index}]")
            segment = _require_dict(effort.get("segment"), f"activity {activity_id} segment_efforts[{index}].segment")
            segment_id = _require_int(segment, "id", f"activity {activity_id} segment")
            efforts.append(SegmentEffort(segment_id=str(segment_id), activity_id=activity_id))
        return cls(id=activity_id, segment_efforts=tuple(efforts))
