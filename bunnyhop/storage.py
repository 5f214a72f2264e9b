from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from .errors import NotFoundError, StorageBusyError, StorageCorruptError
from .records import parse_utc
from .token_manager import Credential


logger = logging.getLogger(__name__)

LOCK_POLL_SECONDS = 0.05
DOCUMENT_LOCK_TTL_SECONDS = 60

_PROCESS_LOCKS_GUARD = threading.Lock()
_PROCESS_LOCKS: dict[str, threading.Lock] = {}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _connect_runtime_db(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS runtime_kv (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS runtime_locks (
            lock_name TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            acquired_at_utc TEXT NOT NULL,
            expires_at_utc TEXT NOT NULL
        )
        """
    )
    return conn


def set_runtime_value(db_path: Path, key: str, value: Any) -> None:
    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute(
                """
                INSERT INTO runtime_kv (key, value_json, updated_at_utc)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (key, json.dumps(value, sort_keys=True), _utc_now_iso()),
            )
    except sqlite3.Error as exc:
        logger.warning("Could not record runtime value %s: %s", key, exc)


def get_runtime_value(db_path: Path, key: str, default: Any = None) -> Any:
    try:
        with _connect_runtime_db(db_path) as conn:
            row = conn.execute(
                "SELECT value_json FROM runtime_kv WHERE key = ? LIMIT 1",
                (key,),
            ).fetchone()
    except sqlite3.Error:
        return default

    if row is None:
        return default
    try:
        return json.loads(str(row[0]))
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def acquire_runtime_lock(
    db_path: Path,
    lock_name: str,
    owner: str,
    ttl_seconds: int,
    now_utc: datetime | None = None,
) -> bool:
    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    expires = now + timedelta(seconds=max(1, int(ttl_seconds)))

    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT owner, expires_at_utc
                FROM runtime_locks
                WHERE lock_name = ?
                LIMIT 1
                """,
                (lock_name,),
            ).fetchone()

            if row:
                current_owner = str(row[0])
                expires_at = parse_utc(row[1])
                if expires_at and expires_at > now and current_owner != owner:
                    return False

            conn.execute(
                """
                INSERT INTO runtime_locks (lock_name, owner, acquired_at_utc, expires_at_utc)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(lock_name) DO UPDATE SET
                    owner = excluded.owner,
                    acquired_at_utc = excluded.acquired_at_utc,
                    expires_at_utc = excluded.expires_at_utc
                """,
                (lock_name, owner, now.isoformat(), expires.isoformat()),
            )
        return True
    except sqlite3.Error:
        return False


def release_runtime_lock(db_path: Path, lock_name: str, owner: str) -> None:
    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute(
                "DELETE FROM runtime_locks WHERE lock_name = ? AND owner = ?",
                (lock_name, owner),
            )
    except sqlite3.Error as exc:
        logger.warning("Could not release runtime lock %s: %s", lock_name, exc)


def get_runtime_lock_owner(db_path: Path, lock_name: str) -> str | None:
    try:
        with _connect_runtime_db(db_path) as conn:
            row = conn.execute(
                """
                SELECT owner, expires_at_utc
                FROM runtime_locks
                WHERE lock_name = ?
                LIMIT 1
                """,
                (lock_name,),
            ).fetchone()
    except sqlite3.Error:
        return None
    if not row:
        return None
    expires_at = parse_utc(row[1])
    if expires_at is not None and expires_at <= _utc_now():
        return None
    owner = str(row[0]).strip()
    return owner or None


def _process_lock(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _PROCESS_LOCKS_GUARD:
        lock = _PROCESS_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _PROCESS_LOCKS[key] = lock
        return lock


@contextmanager
def document_lock(path: Path, db_path: Path, *, timeout_seconds: float) -> Iterator[None]:
    """Single-writer section for ``path``: one thread per process, one process per host."""
    deadline = time.monotonic() + timeout_seconds
    thread_lock = _process_lock(path)
    if not thread_lock.acquire(timeout=timeout_seconds):
        raise StorageBusyError(f"Timed out waiting for the writer lock on {path.name}.")
    lock_name = f"document:{path.resolve()}"
    owner = f"writer:{uuid.uuid4().hex}"
    try:
        while not acquire_runtime_lock(db_path, lock_name, owner, ttl_seconds=DOCUMENT_LOCK_TTL_SECONDS):
            if time.monotonic() >= deadline:
                raise StorageBusyError(f"Timed out waiting for the writer lock on {path.name}.")
            time.sleep(LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            release_runtime_lock(db_path, lock_name, owner)
    finally:
        thread_lock.release()


def write_json(path: Path, payload: dict[str, Any], *, sort_keys: bool = True) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=sort_keys), encoding="utf-8")
    tmp_path.replace(path)


def read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable JSON document at %s.", path)
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring JSON document at %s: top level is not an object.", path)
        return None
    return payload


@dataclass(frozen=True)
class RiderResult:
    athlete_id: int
    name: str
    profile_photo_url: str
    total_points: int
    completed_segment_ids: frozenset[str]
    fetched_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "athlete_id": self.athlete_id,
            "name": self.name,
            "profile_photo_url": self.profile_photo_url,
            "total_points": self.total_points,
            "completed_segment_ids": sorted(self.completed_segment_ids),
            "fetched_at": self.fetched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RiderResult":
        fetched_at = parse_utc(payload.get("fetched_at"))
        if fetched_at is None:
            raise ValueError("fetched_at is missing or not ISO-8601.")
        raw_ids = payload.get("completed_segment_ids") or []
        if not isinstance(raw_ids, list):
            raise ValueError("completed_segment_ids must be a list.")
        return cls(
            athlete_id=int(payload["athlete_id"]),
            name=str(payload.get("name") or ""),
            profile_photo_url=str(payload.get("profile_photo_url") or ""),
            total_points=int(payload["total_points"]),
            completed_segment_ids=frozenset(str(item) for item in raw_ids),
            fetched_at=fetched_at,
        )


class JsonDocumentStore:
    """A keyed map persisted as one JSON document and rewritten whole on every change."""

    def __init__(self, path: Path, runtime_db_path: Path, *, lock_timeout_seconds: float = 30.0):
        self.path = path
        self.runtime_db_path = runtime_db_path
        self.lock_timeout_seconds = lock_timeout_seconds

    def read_all(self) -> dict[str, Any]:
        return read_json(self.path) or {}

    def mutate(self, fn: Callable[[dict[str, Any]], None]) -> None:
        with document_lock(self.path, self.runtime_db_path, timeout_seconds=self.lock_timeout_seconds):
            document = read_json(self.path)
            if document is None:
                if self.path.exists():
                    # Rewriting an unreadable document would drop every entry in it.
                    raise StorageCorruptError(f"Refusing to rewrite unreadable document {self.path.name}.")
                document = {}
            fn(document)
            # Insertion order is the tie-break order for equal scores.
            write_json(self.path, document, sort_keys=False)


class ResultStore(JsonDocumentStore):
    def upsert(self, result: RiderResult) -> None:
        def _replace(document: dict[str, Any]) -> None:
            document[str(result.athlete_id)] = result.to_dict()

        self.mutate(_replace)
        logger.info("Stored result for athlete %s: %s point(s).", result.athlete_id, result.total_points)

    def get(self, athlete_id: int | str) -> RiderResult:
        raw = self.read_all().get(str(athlete_id))
        if not isinstance(raw, dict):
            raise NotFoundError(f"No result stored for athlete {athlete_id}.")
        try:
            return RiderResult.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Stored result for athlete %s is unreadable: %s", athlete_id, exc)
            raise NotFoundError(f"No readable result stored for athlete {athlete_id}.") from exc

    def list_all(self) -> list[RiderResult]:
        results = []
        for key, raw in self.read_all().items():
            if not isinstance(raw, dict):
                logger.warning("Skipping stored result %s: not an object.", key)
                continue
            try:
                results.append(RiderResult.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping stored result %s: %s", key, exc)
        # sorted() is stable, so equal scores keep document order.
        return sorted(results, key=lambda result: result.total_points, reverse=True)


class CredentialStore(JsonDocumentStore):
    def save(self, credential: Credential) -> None:
        def _replace(document: dict[str, Any]) -> None:
            document[str(credential.athlete_id)] = credential.to_dict()

        self.mutate(_replace)

    def get(self, athlete_id: int | str) -> Credential | None:
        raw = self.read_all().get(str(athlete_id))
        if not isinstance(raw, dict):
            return None
        try:
            return Credential.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Stored credential for athlete %s is unreadable: %s", athlete_id, exc)
            return None

    def delete(self, athlete_id: int | str) -> None:
        def _remove(document: dict[str, Any]) -> None:
            document.pop(str(athlete_id), None)

        self.mutate(_remove)
