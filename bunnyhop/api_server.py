from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlencode

from flask import Flask, redirect, request, session

from .config import Settings, configure_logging
from .errors import (
    AuthError,
    NotFoundError,
    StorageBusyError,
    StorageCorruptError,
    SyncCancelledError,
    SyncInProgressError,
    UpstreamError,
    ValidationError,
)
from .event_config import EventConfig, load_event_config
from .leaderboard import LeaderboardCache, cache_control_header
from .scoring import category_breakdown, completion_percentage, segment_statuses
from .storage import CredentialStore, ResultStore, RiderResult
from .strava_client import AUTHORIZE_URL, OAUTH_SCOPE, StravaClient, build_session
from .sync import build_stores, run_sync, sync_status
from .token_manager import TokenManager


logger = logging.getLogger(__name__)

SESSION_ATHLETE_KEY = "athlete_id"
SESSION_OAUTH_STATE_KEY = "strava_oauth_state"
SYNC_FAILED_MESSAGE = "Failed to sync Strava data."

app = Flask(__name__)

settings: Settings
event: EventConfig
result_store: ResultStore
credential_store: CredentialStore
leaderboard_cache: LeaderboardCache


def configure(new_settings: Settings, new_event: EventConfig | None = None) -> None:
    """Bind the app to one configuration; called once at import and again by tests."""
    global settings, event, result_store, credential_store, leaderboard_cache
    settings = new_settings
    settings.ensure_state_paths()
    event = new_event or load_event_config(settings.event_config_file)
    result_store, credential_store = build_stores(settings)
    leaderboard_cache = LeaderboardCache(
        result_store,
        ttl_seconds=settings.leaderboard_cache_ttl_seconds,
        stale_seconds=settings.leaderboard_stale_seconds,
    )
    app.secret_key = settings.secret_key or secrets.token_hex(32)
    app.config.update(
        SESSION_COOKIE_SECURE=settings.cookie_secure,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_HTTPONLY=True,
    )


def _signed_in_athlete() -> int | None:
    raw = session.get(SESSION_ATHLETE_KEY)
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _unauthorized() -> tuple[dict, int]:
    return {"status": "error", "error": "Unauthorized"}, 401


def _callback_url() -> str:
    return settings.strava_redirect_uri or request.url_root.rstrip("/") + "/auth/strava/callback"


def _redirect_frontend(status: str, reason: str = ""):
    params = {"strava": status}
    if reason:
        params["reason"] = reason
    base = settings.frontend_url or "/"
    separator = "&" if "?" in base else "?"
    return redirect(f"{base}{separator}{urlencode(params)}", 302)


def _state_path_writable(state_dir: Path) -> bool:
    marker = state_dir / ".ready_check"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        marker.write_text("ok", encoding="utf-8")
        marker.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _result_payload(result: RiderResult) -> dict:
    return {
        **result.to_dict(),
        "max_points": event.max_points,
        "percentage": completion_percentage(result.total_points, event.segments),
        "segments": segment_statuses(result.completed_segment_ids, event.segments),
        "categories": category_breakdown(result.completed_segment_ids, event.segments),
    }


@app.get("/health")
def health() -> tuple[dict, int]:
    return (
        {
            "status": "ok",
            "time_utc": datetime.now(timezone.utc).isoformat(),
            "results_document_exists": settings.results_file.exists(),
        },
        200,
    )


@app.get("/ready")
def ready() -> tuple[dict, int]:
    checks = {
        "state_path_writable": _state_path_writable(settings.state_dir),
        "strava_client_configured": bool(settings.strava_client_id and settings.strava_client_secret),
        "catalog_loaded": bool(event.segments),
    }
    ready_ok = all(checks.values())
    return (
        {
            "status": "ready" if ready_ok else "not_ready",
            "time_utc": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        },
        200 if ready_ok else 503,
    )


@app.get("/event")
def event_get() -> tuple[dict, int]:
    return {"status": "ok", "event": event.to_dict()}, 200


@app.get("/auth/strava/start")
def strava_oauth_start():
    if not settings.strava_client_id or not settings.strava_client_secret:
        return {
            "status": "error",
            "error": "Set STRAVA_CLIENT_ID and STRAVA_CLIENT_SECRET before starting OAuth.",
        }, 500

    state_token = secrets.token_urlsafe(24)
    session[SESSION_OAUTH_STATE_KEY] = state_token
    params = {
        "client_id": settings.strava_client_id,
        "response_type": "code",
        "redirect_uri": _callback_url(),
        "approval_prompt": "auto",
        "scope": OAUTH_SCOPE,
        "state": state_token,
    }
    return redirect(f"{AUTHORIZE_URL}?{urlencode(params)}", 302)


@app.get("/auth/strava/callback")
def strava_oauth_callback():
    error = str(request.args.get("error") or "").strip()
    if error:
        return _redirect_frontend("error", error)

    code = str(request.args.get("code") or "").strip()
    state_token = str(request.args.get("state") or "").strip()
    saved_state = str(session.pop(SESSION_OAUTH_STATE_KEY, "") or "")
    if not code:
        return _redirect_frontend("error", "missing_code")
    if not state_token or state_token != saved_state:
        return _redirect_frontend("error", "state_mismatch")

    http_session = build_session(pool_size=2)
    token_manager = TokenManager(
        lambda access_token: StravaClient(settings, access_token=access_token, session=http_session)
    )
    try:
        credential, athlete = token_manager.exchange_code(code)
        credential_store.save(credential)
    except AuthError:
        logger.exception("Strava sign-in failed during code exchange.")
        return _redirect_frontend("error", "token_exchange_failed")
    except (StorageBusyError, StorageCorruptError):
        logger.exception("Strava sign-in failed while storing the credential.")
        return _redirect_frontend("error", "storage_busy")
    finally:
        http_session.close()

    session[SESSION_ATHLETE_KEY] = athlete.id
    logger.info("Athlete %s signed in.", athlete.id)
    return _redirect_frontend("ok")


@app.post("/auth/logout")
def logout() -> tuple[dict, int]:
    athlete_id = _signed_in_athlete()
    session.pop(SESSION_ATHLETE_KEY, None)
    if athlete_id is not None:
        try:
            credential_store.delete(athlete_id)
        except (StorageBusyError, StorageCorruptError):
            logger.exception("Could not remove stored Strava tokens for athlete %s.", athlete_id)
            return {"status": "error", "error": "Signed out, but stored Strava tokens could not be removed."}, 503
        logger.info("Athlete %s signed out; stored Strava tokens removed.", athlete_id)
    return {"status": "ok"}, 200


@app.post("/sync")
def sync_post() -> tuple[dict, int]:
    athlete_id = _signed_in_athlete()
    if athlete_id is None:
        return _unauthorized()

    try:
        result = run_sync(settings, event, athlete_id)
    except AuthError:
        logger.exception("Sync for athlete %s failed: credential rejected.", athlete_id)
        return {"status": "error", "error": "Strava authorization expired. Please sign in again."}, 401
    except SyncInProgressError:
        return {"status": "error", "error": "A sync is already running for this rider."}, 409
    except (UpstreamError, ValidationError):
        logger.exception("Sync for athlete %s failed talking to Strava.", athlete_id)
        return {"status": "error", "error": SYNC_FAILED_MESSAGE}, 502
    except (StorageBusyError, StorageCorruptError, SyncCancelledError):
        logger.exception("Sync for athlete %s did not complete.", athlete_id)
        return {"status": "error", "error": SYNC_FAILED_MESSAGE}, 503
    except Exception:
        logger.exception("Sync for athlete %s failed unexpectedly.", athlete_id)
        return {"status": "error", "error": SYNC_FAILED_MESSAGE}, 500

    leaderboard_cache.invalidate()
    return {"status": "ok", "result": _result_payload(result)}, 200


@app.get("/sync")
def sync_get() -> tuple[dict, int]:
    athlete_id = _signed_in_athlete()
    if athlete_id is None:
        return _unauthorized()
    last_sync = sync_status(settings, athlete_id)
    try:
        result = result_store.get(athlete_id)
    except NotFoundError:
        return {"status": "error", "error": "Not synced yet", "last_sync": last_sync}, 404
    return {"status": "ok", "result": _result_payload(result), "last_sync": last_sync}, 200


@app.get("/leaderboard")
def leaderboard_get():
    entries, cache_state = leaderboard_cache.get()
    payload = {
        "status": "ok",
        "cache_state": cache_state,
        "event_name": event.event_name,
        "max_points": event.max_points,
        "segment_count": len(event.segments),
        "entries": [entry.to_dict() for entry in entries],
    }
    headers = {
        "Cache-Control": cache_control_header(
            settings.leaderboard_cache_ttl_seconds,
            settings.leaderboard_stale_seconds,
        )
    }
    return payload, 200, headers


configure(Settings.from_env())
configure_logging(settings.log_level)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=settings.api_port)
