"""
Rebuild variant leaderboard entries from raw games.

Reads games of the selected types plus the existing 'general' leaderboard
entries, reconciles them and (only with --apply --test) writes the difference.

Usage:
    python -m Leaderboard_Rebuild [--type time_ladder ...] [--target DB] [--apply --test]
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from utils.batch_writer import WritePlan, commit_in_chunks
from utils.cli import build_parser, export_plan, fatal, print_json, resolve_expected_target
from utils.db_utils import get_connection_string, get_db, resolve_target_db_name
from utils.log_utils import RUN_ID, configure_logging, log_kv, timed
from utils.safety import check_mode, check_target, describe_mode

from .identity import IdentityResolver
from .reconcile import LEADERBOARD_TYPE, reconcile
from .variants import DEFAULT_GAME_TYPES

GAMES_COLLECTION = "games"
USERS_COLLECTION = "users"
ENTRIES_COLLECTION = "leaderboard_entries"

CHUNK_SIZE = 350
MAX_TYPES = 10


def check_type_filter(types: list[str]) -> str | None:
    if not types or len(types) > MAX_TYPES:
        return f"Type list must contain 1..{MAX_TYPES} game types."
    return None


def load_inputs(db, types: list[str]) -> tuple[list[dict], list[dict]]:
    sessions = list(db[GAMES_COLLECTION].find({"game_type": {"$in": types}}))
    entries = list(
        db[ENTRIES_COLLECTION].find({"leaderboard_type": LEADERBOARD_TYPE, "game_type": {"$in": types}})
    )
    logging.info("[Rebuild] Loaded %d games and %d existing entries", len(sessions), len(entries))
    return sessions, entries


def plan_writes(result: dict) -> WritePlan:
    """Creates and updates in discovery order, then duplicate deletes."""
    plan = WritePlan()
    for doc in result["to_create"]:
        plan.insert(ENTRIES_COLLECTION, doc, detail=f"{doc['player_name']} game={doc['game_id']} score={doc['score']}")
    for upd in result["to_update"]:
        fields = upd["fields"]
        plan.set(
            ENTRIES_COLLECTION,
            upd["_id"],
            fields,
            unset=upd.get("unset") or (),
            detail=f"{fields['player_name']} game={fields['game_id']} score={fields['score']}",
        )
    for entry in result["to_delete"]:
        plan.delete(
            ENTRIES_COLLECTION,
            entry["_id"],
            detail=f"duplicate of {entry.get('player_name')} game={entry.get('game_id')} score={entry.get('score')}",
        )
    return plan


def run(
    db,
    types: list[str] | None = None,
    apply: bool = False,
    export_path: str | None = None,
    now: datetime | None = None,
    transactional: bool | None = None,
) -> dict:
    """Reconcile and, when apply is set, commit. Returns the summary counters."""
    types = types or list(DEFAULT_GAME_TYPES)
    now = now or datetime.now(timezone.utc)

    with timed("rebuild.read", types=types):
        sessions, entries = load_inputs(db, types)

    with timed("rebuild.reconcile"):
        resolver = IdentityResolver(db[USERS_COLLECTION])
        result = reconcile(sessions, entries, resolver, now=now)

    plan = plan_writes(result)
    summary = {**result["counts"], "identity_lookups": resolver.lookups, "write_ops": len(plan)}
    log_kv(logging.INFO, "[Rebuild] plan", mode=describe_mode(apply), **summary)

    if export_path:
        export_plan(plan.rows, export_path)

    if apply and len(plan):
        with timed("rebuild.write", ops=len(plan)):
            summary["applied_writes"] = commit_in_chunks(db, plan.writers, CHUNK_SIZE, transactional=transactional)
    else:
        summary["applied_writes"] = 0
    return summary


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser("Rebuild variant leaderboard entries from raw games")
    parser.add_argument("--type", action="append", default=[], help="Game type to rebuild (repeatable)")
    args = parser.parse_args(argv)

    types = [t for t in args.type if t] or list(DEFAULT_GAME_TYPES)
    reason = check_mode(args.apply, args.test) or check_type_filter(types)
    if reason:
        return fatal(reason)

    try:
        uri = get_connection_string()
    except RuntimeError as e:
        return fatal(str(e))

    expected = resolve_expected_target(args)
    actual = resolve_target_db_name(uri)
    print_json(
        {
            "mode": describe_mode(args.apply),
            "target": actual,
            "expectedTarget": expected,
            "targetTypes": types,
            "runId": RUN_ID,
        }
    )
    reason = check_target(expected, actual)
    if reason:
        return fatal(reason)

    try:
        summary = run(get_db(uri, actual), types=types, apply=args.apply, export_path=args.export_plan)
    except Exception:
        logging.exception("[Rebuild] Run failed")
        return 1

    print_json(summary)
    if not args.apply:
        print("Dry-run complete. Re-run with --apply --test to write changes.")
    return 0
