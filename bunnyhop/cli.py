from __future__ import annotations

import argparse
import json
import logging
import threading

from .config import Settings, configure_logging
from .errors import BunnyHopError
from .event_config import load_event_config
from .leaderboard import read_leaderboard
from .sync import build_stores, run_sync


logger = logging.getLogger(__name__)


def _sync(settings: Settings, athlete_id: int) -> int:
    settings.validate()
    event = load_event_config(settings.event_config_file)
    cancel_event = threading.Event()
    outcome: dict[str, object] = {}

    def _target() -> None:
        try:
            outcome["result"] = run_sync(settings, event, athlete_id, cancel_event=cancel_event)
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name=f"sync-{athlete_id}", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling sync for athlete %s.", athlete_id)
        cancel_event.set()
        worker.join()

    error = outcome.get("error")
    if isinstance(error, BunnyHopError):
        logger.error("Sync for athlete %s failed: %s", athlete_id, error)
        return 1
    if error is not None:
        raise error
    result = outcome["result"]
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def _leaderboard(settings: Settings) -> int:
    result_store, _credential_store = build_stores(settings)
    entries = read_leaderboard(result_store)
    if not entries:
        print("No riders have synced yet.")
        return 0
    for entry in entries:
        result = entry.result
        print(f"{entry.rank:>3}. {result.name:<30} {result.total_points:>4} pts  ({len(result.completed_segment_ids)} segments)")
    return 0


def _event(settings: Settings) -> int:
    event = load_event_config(settings.event_config_file)
    print(json.dumps(event.to_dict(), indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Bunny Hop segment scoring.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run one sync for a signed-in rider.")
    sync_parser.add_argument("-a", "--athlete-id", type=int, required=True, help="Strava athlete ID.")
    subparsers.add_parser("leaderboard", help="Print the ranked leaderboard.")
    subparsers.add_parser("event", help="Print the event configuration and segment catalog.")

    args = parser.parse_args(argv)
    settings = Settings.from_env()
    settings.ensure_state_paths()
    configure_logging(settings.log_level)

    if args.command == "sync":
        return _sync(settings, args.athlete_id)
    if args.command == "leaderboard":
        return _leaderboard(settings)
    return _event(settings)


if __name__ == "__main__":
    raise SystemExit(main())
